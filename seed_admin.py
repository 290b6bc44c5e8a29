from dotenv import load_dotenv
load_dotenv()

import os

from app import app
from auth import hash_password
import storage

ADMIN_EMAIL = os.environ.get('ADMIN_EMAIL', 'admin@example.com')
ADMIN_PASSWORD = os.environ.get('ADMIN_PASSWORD', 'admin12345')


def seed_admin(email=ADMIN_EMAIL, password=ADMIN_PASSWORD):
    """Create the first administrator unless an account with that email exists."""
    user = storage.get_user_by_email(email)
    if user:
        print(f"Admin user already exists: {email}")
        return user
    user = storage.create_user(
        email=email,
        first_name='Admin',
        last_name='User',
        password=hash_password(password),
        role='admin',
        is_active=True,
    )
    print(f"Seeded admin user: {email} / {password}")
    return user


if __name__ == "__main__":
    with app.app_context():
        seed_admin()
