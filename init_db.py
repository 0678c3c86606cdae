import os
import sys
from app import app, db, House, ReminderTemplate

DEFAULT_HOUSES = os.getenv('FARM_HOUSES', 'H1,H2,H3')

def init_db(house_names=DEFAULT_HOUSES, with_bundle=False):
    with app.app_context():
        db.create_all()

        existing = {h.name for h in House.query.all()}
        for name in [n.strip() for n in house_names.split(',') if n.strip()]:
            if name not in existing:
                db.session.add(House(name=name))
                print(f"Added House: {name}")
        db.session.commit()

        print(f"Houses: {House.query.count()}, reminder templates: {ReminderTemplate.query.count()}")

    if with_bundle:
        from seed_standard_bundle import seed_standard_bundle
        seed_standard_bundle()

    print("Database initialized.")

if __name__ == "__main__":
    init_db(with_bundle='--with-bundle' in sys.argv)
