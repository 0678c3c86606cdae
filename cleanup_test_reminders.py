from app import app, db, Reminder

def cleanup():
    with app.app_context():
        orphans = Reminder.query.filter(Reminder.flock_id.is_(None))

        deleted = orphans.filter(Reminder.title.like('Test%')).delete(synchronize_session=False)
        print(f"Deleted test reminders: {deleted}")

        deleted_alerts = orphans.filter(Reminder.title == 'Critical FCR Alert').delete(synchronize_session=False)
        print(f"Deleted Critical FCR Alert reminders: {deleted_alerts}")

        db.session.commit()

        remaining = Reminder.query.filter_by(status='pending').count()
        print(f"Remaining pending reminders: {remaining}")
        return deleted + deleted_alerts, remaining

if __name__ == '__main__':
    cleanup()
