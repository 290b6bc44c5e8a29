from dotenv import load_dotenv
load_dotenv()

# database.py
import logging
import os

logger = logging.getLogger(__name__)


def get_database_url():
    """SQLAlchemy URL from DATABASE_URL, or a local SQLite file when it is not set."""
    database_url = os.environ.get('DATABASE_URL')
    if database_url and database_url.startswith('postgres://'):
        database_url = database_url.replace('postgres://', 'postgresql://', 1)
    if not database_url:
        sqlite_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'helpdesk.db')
        logger.info('DATABASE_URL not set. Using SQLite at %s', sqlite_path)
        database_url = f'sqlite:///{sqlite_path}'
    return database_url


def init_database():
    """Create every table that does not exist yet."""
    from app import app
    from models import db

    with app.app_context():
        db.create_all()
        logger.info('Database schema ready (%s)', db.engine.url.render_as_string(hide_password=True))


if __name__ == '__main__':
    logging.basicConfig(level=os.environ.get('LOG_LEVEL', 'INFO'))
    init_database()
