import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.db import create_db_and_tables, is_configured

if __name__ == "__main__":
    if not is_configured():
        print("DATABASE_URL not set, nothing to create")
        sys.exit(1)
    print("Creating agent ops tables...")
    try:
        create_db_and_tables()
        print("Tables created successfully!")
    except Exception as e:
        print(f"Error creating tables: {e}")
        sys.exit(1)
