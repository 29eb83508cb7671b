
import os
import sys
from dotenv import load_dotenv

# Add backend directory to sys.path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

# Load env
load_dotenv(os.path.join(os.path.dirname(__file__), '..', '.env'))

from monetization.database import get_db
from monetization.routes.auth import create_access_token

def main():
    if len(sys.argv) != 2:
        print("Usage: python scripts/set_admin.py <email>")
        sys.exit(1)

    email = sys.argv[1].strip().lower()
    db = get_db()

    res = db.table("users").select("id, email, role").eq("email", email).limit(1).execute()
    if not res.data:
        print(f"No user found with email {email}")
        sys.exit(1)

    user = res.data[0]
    if user.get("role") == "admin":
        print(f"{email} is already an admin")
    else:
        db.table("users").update({"role": "admin"}).eq("id", user["id"]).execute()
        print(f"Promoted {email} ({user['id']}) to admin")

    print("Admin token (valid 24h):")
    print(create_access_token(user["id"]))

if __name__ == "__main__":
    main()
