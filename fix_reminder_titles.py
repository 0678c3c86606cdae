import sys
from app import app, repair_reminder_titles

def fix_titles(dry_run=False):
    with app.app_context():
        summary = repair_reminder_titles(dry_run=dry_run)

        for change in summary.changes:
            print(f"Fixing: \"{change['old_title']}\" -> \"{change['new_title']}\" (reminder {change['id']})")

        for item, error in summary.errors:
            print(f"Failed reminder {item}: {error}")

        verb = "Would update" if dry_run else "Updated"
        print(f"Done! {verb} {summary.succeeded} reminders, skipped {summary.skipped}, failed {summary.failed}.")
        return summary

if __name__ == '__main__':
    fix_titles(dry_run='--dry-run' in sys.argv)
