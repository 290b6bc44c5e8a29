from dotenv import load_dotenv
load_dotenv()

from app import app
from auth import hash_password
from errors import ConflictError
import storage

# --- Demo accounts to add ---
# Format: (First name, Last name, Email, Password, Role)
# Available roles: 'end_user', 'it_staff', 'manager', 'admin'
USERS_TO_ADD = [
    ('Alice', 'Moreau', 'alice.moreau@example.com', 'user12345', 'end_user'),
    ('Bruno', 'Costa', 'bruno.costa@example.com', 'user12345', 'end_user'),
    ('Chloe', 'Nakamura', 'chloe.nakamura@example.com', 'user12345', 'end_user'),
    ('Daniel', 'Okafor', 'daniel.okafor@example.com', 'staff12345', 'it_staff'),
    ('Elena', 'Petrova', 'elena.petrova@example.com', 'staff12345', 'it_staff'),
    ('Farid', 'Haddad', 'farid.haddad@example.com', 'staff12345', 'it_staff'),
    ('Grace', 'Lindqvist', 'grace.lindqvist@example.com', 'manager12345', 'manager'),
    ('Hugo', 'Sato', 'hugo.sato@example.com', 'admin12345', 'admin'),
]


def add_users_bulk(users=USERS_TO_ADD):
    """Adds a list of users in bulk, skipping emails that already exist."""
    added = 0
    for first_name, last_name, email, password, role in users:
        try:
            storage.create_user(
                email=email,
                first_name=first_name,
                last_name=last_name,
                password=hash_password(password),
                role=role,
                is_active=True,
            )
            added += 1
            print(f"Successfully added user: {first_name} {last_name} ({email}, {role})")
        except ConflictError:
            print(f"User with email {email} already exists. Skipping.")
    print(f"\nBulk user addition completed: {added} added.")
    return added


if __name__ == '__main__':
    with app.app_context():
        add_users_bulk()
