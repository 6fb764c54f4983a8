import os

from config import Config
from database import StudyStore

DATABASE = Config.DATABASE


def reset_database():
    """
    Completely resets the database by:
    1. Deleting the database file
    2. Recreating it from schema.sql
    """

    # Check if database exists
    if os.path.exists(DATABASE):
        print(f"Found existing database: {DATABASE}")

        # Ask for confirmation
        response = input("⚠️  WARNING: This will delete ALL data (users, sessions, messages, notifications)!\nAre you sure? Type 'YES' to confirm: ")

        if response != 'YES':
            print("Reset cancelled.")
            return

        # Delete the database file
        try:
            os.remove(DATABASE)
            print(f"✓ Deleted {DATABASE}")
        except OSError as e:
            print(f"Error deleting database: {e}")
            return

    # Recreate database with schema
    print("Creating fresh database...")
    StudyStore(DATABASE).init_db()

    print("✓ Database reset successfully!")
    print("✓ All tables recreated with structure intact")


if __name__ == '__main__':
    reset_database()
