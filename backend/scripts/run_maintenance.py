
import os
import sys
from dotenv import load_dotenv

# Add backend directory to sys.path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

# Load env
load_dotenv(os.path.join(os.path.dirname(__file__), '..', '.env'))

from monetization.main import configure_logging
from monetization.services import maintenance

def main():
    configure_logging()
    print("Running maintenance jobs once...")
    report = maintenance.run_maintenance()
    for job, count in report.items():
        print(f"  {job}: {count}")

if __name__ == "__main__":
    main()
