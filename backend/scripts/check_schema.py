
import os
import sys
from dotenv import load_dotenv

# Add backend directory to sys.path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

# Load env
load_dotenv(os.path.join(os.path.dirname(__file__), '..', '.env'))

from monetization.database import get_db

TABLES = (
    "users",
    "videos",
    "video_uploads",
    "view_sessions",
    "ad_views",
    "transactions",
    "audit_logs",
    "idempotency_keys",
)

def main():
    print("Checking monetization tables...")
    db = get_db()
    missing = []

    for table in TABLES:
        try:
            res = db.table(table).select("*", count="exact").limit(1).execute()
        except Exception as e:
            print(f"  {table}: ERROR {e}")
            missing.append(table)
            continue
        if res.data:
            print(f"  {table}: {res.count} rows, columns {sorted(res.data[0].keys())}")
        else:
            print(f"  {table}: empty")

    if missing:
        print("Apply backend/supabase/schema.sql for:", ", ".join(missing))
        sys.exit(1)

if __name__ == "__main__":
    main()
