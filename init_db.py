"""
Initialize the invoice database: tables, default system settings and bootstrap accounts
"""
from main import app, db
from accounts import ensure_default_users
from utils import initialize_system_settings


def init_database(reset=False):
    with app.app_context():
        if reset:
            db.drop_all()
        db.create_all()

        initialize_system_settings()
        created = ensure_default_users()

        print("Database initialized")
        for username in created:
            print(f"  created user: {username}")
        if created:
            print("Change the default passwords before going live.")


if __name__ == '__main__':
    import sys
    init_database(reset='--reset' in sys.argv)
