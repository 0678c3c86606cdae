import sys
from app import app, delete_flock_cascade
from reminder_templates import InvalidInput, PersistenceFailure

def delete_flock(flock_id):
    with app.app_context():
        print(f"Attempting to delete flock {flock_id}")
        try:
            counts = delete_flock_cascade(flock_id)
        except InvalidInput as e:
            print(f"ERROR: {e}")
            return None
        except PersistenceFailure as e:
            print(f"ERROR: {e}")
            print("Nothing was deleted.")
            return None

        for table, count in counts.items():
            print(f"  {table}: {count} rows")
        print("SUCCESS! Flock deleted.")
        return counts

if __name__ == '__main__':
    if len(sys.argv) < 2:
        print("Usage: python delete_flock.py <flock_id>")
        sys.exit(1)
    delete_flock(int(sys.argv[1]))
