from app import app, ReminderTemplate, fix_bundle_day_names
from reminder_templates import InvalidInput

def fix_day_names():
    with app.app_context():
        bundles = ReminderTemplate.query.filter_by(is_bundle=True).order_by(ReminderTemplate.id).all()
        updated = 0

        for template in bundles:
            try:
                changes = fix_bundle_day_names(template.id)
            except InvalidInput as e:
                print(f"Skipping template {template.id}: {e}")
                continue

            for old, new in changes:
                print(f"Fixing: \"{old}\" -> \"{new}\"")

            if changes:
                updated += 1
                print(f"Updated template: {template.name}")
            else:
                print(f"No changes needed for template: {template.name}")

        print(f"Done! {updated} of {len(bundles)} bundle templates updated.")
        return updated

if __name__ == '__main__':
    fix_day_names()
