from app import app, db, ReminderTemplate
from reminder_templates import parse_bundle_config, dump_bundle_config

BUNDLE_NAME = "Standard Broiler Cycle (42 Days)"
BUNDLE_DESCRIPTION = ("Reminder bundle for a standard 42-day broiler cycle: vaccinations, feed transitions, "
                      "environmental checks, biosecurity, milestones and performance alerts. "
                      "Copy and customize for your farm.")

def _r(day, name, priority, description):
    return {'dayOffset': day, 'name': f"Day {day} - {name}", 'priority': priority, 'description': description}

STANDARD_BROILER_BUNDLE = [
    {
        'category': 'vaccination', 'name': 'Vaccination', 'enabled': True,
        'reminders': [
            _r(0, "Marek's Disease Vaccination", 'urgent', "Administer Marek's disease vaccine to day-old chicks"),
            _r(7, "Newcastle Disease (First Dose)", 'high', "First dose of Newcastle disease vaccine via drinking water"),
            _r(14, "Gumboro Disease Vaccination", 'high', "Administer Infectious Bursal Disease (Gumboro) vaccine"),
            _r(21, "Newcastle Disease (Booster)", 'high', "Booster dose of Newcastle disease vaccine"),
        ],
    },
    {
        'category': 'feed_transition', 'name': 'Feed Transition', 'enabled': True,
        'reminders': [
            _r(0, "Start Starter Feed", 'high', "Begin with starter feed (22-24% protein)"),
            _r(10, "Prepare Grower Feed Transition", 'medium', "Prepare for transition to grower feed, start mixing"),
            _r(14, "Complete Grower Feed Transition", 'high', "Complete transition to grower feed (20% protein)"),
            _r(28, "Transition to Finisher Feed", 'high', "Begin finisher feed (18% protein) for market preparation"),
        ],
    },
    {
        'category': 'environmental_check', 'name': 'Environmental Checks', 'enabled': True,
        'reminders': [
            _r(0, "Initial Brooding Temperature Check", 'urgent', "Verify brooding temperature at 32-35°C, check heat source"),
            _r(7, "Reduce Temperature to 29-32°C", 'high', "Gradually reduce temperature, check ventilation"),
            _r(14, "Temperature Adjustment to 26-29°C", 'medium', "Continue temperature reduction, monitor bird behavior"),
            _r(21, "Final Temperature Setting 21-24°C", 'medium', "Set final growing temperature, optimize ventilation"),
        ],
    },
    {
        'category': 'biosecurity', 'name': 'Biosecurity', 'enabled': True,
        'reminders': [
            _r(0, "Pre-Placement Biosecurity Check", 'urgent', "Verify house disinfection, footbaths ready, visitor log in place"),
            _r(7, "Weekly Biosecurity Audit", 'medium', "Check footbath effectiveness, equipment sanitization, pest control"),
            _r(14, "Mid-Cycle Biosecurity Review", 'medium', "Review visitor logs, check perimeter security, rodent control"),
            _r(28, "Pre-Harvest Biosecurity Protocol", 'high', "Prepare for catching crew, verify transport biosecurity"),
        ],
    },
    {
        'category': 'milestone', 'name': 'Milestones', 'enabled': True,
        'reminders': [
            _r(7, "First Week Weight Check", 'high', "Sample weight check, target 170-180g, assess uniformity"),
            _r(14, "Two Week Performance Review", 'high', "Weight target 450-500g, calculate FCR, review mortality"),
            _r(21, "Three Week Assessment", 'high', "Weight target 900-1000g, FCR around 1.4, assess flock health"),
            _r(35, "Pre-Market Evaluation", 'urgent', "Final weight assessment, FCR calculation, market readiness check"),
        ],
    },
    {
        'category': 'performance_alert', 'name': 'Performance Alerts', 'enabled': True,
        'reminders': [
            _r(3, "Early Mortality Check", 'urgent', "First 72-hour mortality should be below 1%, investigate if higher"),
            _r(10, "Growth Rate Assessment", 'high', "Compare growth to standards, adjust feed if underperforming"),
            _r(21, "Mid-Cycle Performance Review", 'high', "Cumulative mortality below 3%, FCR on target, uniformity above 85%"),
            _r(30, "Final Performance Projection", 'high', "Project final weights, expected yield and harvest date"),
        ],
    },
]

def seed_standard_bundle():
    with app.app_context():
        print("Cleaning up test templates...")
        removed = ReminderTemplate.query.filter(
            ReminderTemplate.name.like('Test%') | ReminderTemplate.name.like('Bundle Test%')
        ).delete(synchronize_session=False)
        print(f"Removed {removed} test templates.")

        categories = parse_bundle_config(STANDARD_BROILER_BUNDLE)

        template = ReminderTemplate.query.filter_by(name=BUNDLE_NAME).first()
        if not template:
            print(f"Creating {BUNDLE_NAME} bundle template...")
            template = ReminderTemplate(name=BUNDLE_NAME, reminder_type='routine_task', priority='medium', day_offset=0)
            db.session.add(template)
        else:
            print(f"Updating {BUNDLE_NAME} bundle template {template.id}...")

        template.description = BUNDLE_DESCRIPTION
        template.is_bundle = True
        template.is_active = True
        template.bundle_config = dump_bundle_config(categories)
        db.session.commit()

        total = sum(len(c.reminders) for c in categories)
        print(f"Bundle ready: {len(categories)} categories, {total} reminders.")
        for c in categories:
            print(f"   - {c.category}: {len(c.reminders)} reminders")
        return template.id

if __name__ == '__main__':
    seed_standard_bundle()
