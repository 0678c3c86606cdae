import sys
import pandas as pd
from app import app, Reminder, Flock
from reminder_templates import title_day, day_number

def reminder_report(flock_id=None):
    """One row per reminder with the title's day number next to the day recomputed from placement."""
    with app.app_context():
        query = Reminder.query
        if flock_id is not None:
            query = query.filter_by(flock_id=flock_id)
        reminders = query.order_by(Reminder.flock_id, Reminder.due_date, Reminder.id).all()
        flocks = {f.id: f for f in Flock.query.all()}

        rows = []
        for r in reminders:
            flock = flocks.get(r.flock_id)
            actual = day_number(r.due_date, flock.placement_date) if flock else None
            rows.append({
                'id': r.id,
                'flock': flock.flock_number if flock else None,
                'title': r.title,
                'due_date': r.due_date,
                'status': r.status,
                'priority': r.priority,
                'title_day': title_day(r.title),
                'actual_day': actual,
            })

    df = pd.DataFrame(rows, columns=['id', 'flock', 'title', 'due_date', 'status', 'priority', 'title_day', 'actual_day'])
    df['drift'] = df['title_day'].notna() & df['actual_day'].notna() & (df['title_day'] != df['actual_day'])
    return df

def check_reminders(output_path=None):
    df = reminder_report()
    if df.empty:
        print("No reminders found.")
        return df

    print(f"Total reminders: {len(df)}")
    print(df.groupby('status').size().to_string())
    print(f"Orphaned (no flock): {df['flock'].isna().sum()}")

    drifted = df[df['drift']]
    print(f"Drifted titles: {len(drifted)}")
    if not drifted.empty:
        print(drifted[['id', 'flock', 'title', 'title_day', 'actual_day']].to_string(index=False))

    if output_path:
        with pd.ExcelWriter(output_path, engine='openpyxl') as writer:
            df.to_excel(writer, sheet_name='Reminders', index=False)
            drifted.to_excel(writer, sheet_name='Drift', index=False)
        print(f"Report written to {output_path}")
    return df

if __name__ == '__main__':
    check_reminders(sys.argv[1] if len(sys.argv) > 1 else None)
