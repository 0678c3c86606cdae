from flask import Flask, request, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from sqlalchemy.exc import SQLAlchemyError
from datetime import datetime, date
import os
from dotenv import load_dotenv
from reminder_templates import (
    InvalidInput, PersistenceFailure,
    expand_template, filter_new_instances, reminder_key,
    merge_category, upsert_category, reconcile_bundle_day_names,
    reconcile_due_date_from_title, check_status_transition, run_batch,
    parse_bundle_config, dump_bundle_config, normalize_priority,
    to_calendar_date, add_days, day_number,
)

load_dotenv()

app = Flask(__name__)
basedir = os.path.abspath(os.path.dirname(__file__))
database_url = os.getenv('DATABASE_URL')
if database_url and database_url.startswith("postgres://"):
    database_url = database_url.replace("postgres://", "postgresql://", 1)

app.config['SQLALCHEMY_DATABASE_URI'] = database_url or 'sqlite:///' + os.path.join(basedir, 'instance', 'farm.db')
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'dev_key')
os.makedirs(os.path.join(basedir, 'instance'), exist_ok=True)

db = SQLAlchemy(app)
migrate = Migrate(app, db)

# --- Models ---

class House(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), unique=True, nullable=False)
    flocks = db.relationship('Flock', backref='house', lazy=True)

class Flock(db.Model):
    __tablename__ = 'flocks'
    id = db.Column(db.Integer, primary_key=True)
    house_id = db.Column(db.Integer, db.ForeignKey('house.id'), nullable=True)
    flock_number = db.Column(db.String(100), unique=True, nullable=False)
    placement_date = db.Column(db.Date, nullable=False, default=date.today) # Day 0
    initial_count = db.Column(db.Integer, default=0)
    status = db.Column(db.String(20), default='active', nullable=False) # 'active' or 'closed'

class ReminderTemplate(db.Model):
    __tablename__ = 'reminder_templates'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    reminder_type = db.Column(db.String(50), nullable=False, default='routine_task')
    priority = db.Column(db.String(20), nullable=False, default='medium')
    day_offset = db.Column(db.Integer, nullable=False, default=0) # Days relative to placement
    is_bundle = db.Column(db.Boolean, default=False, nullable=False)
    bundle_config = db.Column(db.Text, nullable=True) # JSON array of categories
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @property
    def categories(self):
        return parse_bundle_config(self.bundle_config) if self.is_bundle else ()

    def to_dict(self):
        d = {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'reminder_type': self.reminder_type,
            'priority': self.priority,
            'day_offset': self.day_offset,
            'is_bundle': self.is_bundle,
            'is_active': self.is_active,
        }
        if self.is_bundle:
            d['bundle_config'] = [c.to_dict() for c in self.categories]
        return d

class Reminder(db.Model):
    __tablename__ = 'reminders'
    id = db.Column(db.Integer, primary_key=True)
    flock_id = db.Column(db.Integer, db.ForeignKey('flocks.id'), nullable=True, index=True)
    house_id = db.Column(db.Integer, db.ForeignKey('house.id'), nullable=True)
    template_id = db.Column(db.Integer, db.ForeignKey('reminder_templates.id'), nullable=True)
    reminder_type = db.Column(db.String(50), nullable=False, default='routine_task')
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    due_date = db.Column(db.Date, nullable=False, index=True)
    priority = db.Column(db.String(20), nullable=False, default='medium')
    status = db.Column(db.String(20), nullable=False, default='pending', index=True) # 'pending', 'completed', 'dismissed'
    completed_at = db.Column(db.DateTime, nullable=True)
    action_notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    flock = db.relationship('Flock', backref=db.backref('reminders', lazy=True))

    @property
    def key(self):
        return reminder_key(self.title, self.due_date)

    def to_dict(self):
        return {
            'id': self.id,
            'flock_id': self.flock_id,
            'house_id': self.house_id,
            'template_id': self.template_id,
            'reminder_type': self.reminder_type,
            'title': self.title,
            'description': self.description,
            'due_date': self.due_date.isoformat(),
            'day': day_number(self.due_date, self.flock.placement_date) if self.flock else None,
            'priority': self.priority,
            'status': self.status,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'action_notes': self.action_notes,
        }

# Flock dependents. Removal is handled by delete_flock_cascade, not ORM cascades.

class FlockDailyRecord(db.Model):
    __tablename__ = 'flock_daily_records'
    id = db.Column(db.Integer, primary_key=True)
    flock_id = db.Column(db.Integer, db.ForeignKey('flocks.id'), nullable=False)
    record_date = db.Column(db.Date, nullable=False)
    mortality = db.Column(db.Integer, default=0)
    feed_kg = db.Column(db.Float, default=0.0)
    avg_weight_g = db.Column(db.Float, default=0.0)

class VaccinationSchedule(db.Model):
    __tablename__ = 'vaccination_schedules'
    id = db.Column(db.Integer, primary_key=True)
    flock_id = db.Column(db.Integer, db.ForeignKey('flocks.id'), nullable=False)
    vaccine_name = db.Column(db.String(200), nullable=False)
    scheduled_date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(20), default='scheduled') # 'scheduled', 'completed', 'skipped'

class HealthRecord(db.Model):
    __tablename__ = 'health_records'
    id = db.Column(db.Integer, primary_key=True)
    flock_id = db.Column(db.Integer, db.ForeignKey('flocks.id'), nullable=False)
    record_date = db.Column(db.Date, nullable=False)
    notes = db.Column(db.Text)

class MortalityRecord(db.Model):
    __tablename__ = 'mortality_records'
    id = db.Column(db.Integer, primary_key=True)
    flock_id = db.Column(db.Integer, db.ForeignKey('flocks.id'), nullable=False)
    record_date = db.Column(db.Date, nullable=False)
    count = db.Column(db.Integer, default=0)
    cause = db.Column(db.String(100))

class SalesOrderItem(db.Model):
    __tablename__ = 'sales_order_items'
    id = db.Column(db.Integer, primary_key=True)
    flock_id = db.Column(db.Integer, db.ForeignKey('flocks.id'), nullable=True)
    description = db.Column(db.String(200))
    quantity = db.Column(db.Integer, default=0)

FLOCK_DEPENDENTS = [FlockDailyRecord, Reminder, VaccinationSchedule, HealthRecord, MortalityRecord]

# --- Helpers ---

def parse_date(value, field='date'):
    if not value:
        raise InvalidInput(f"Missing {field}")
    try:
        return to_calendar_date(value)
    except InvalidInput:
        raise InvalidInput(f"Invalid {field}: {value!r}")

def parse_int(value, field, default=None):
    if value is None or value == '':
        if default is None:
            raise InvalidInput(f"Missing {field}")
        return default
    if isinstance(value, bool):
        raise InvalidInput(f"Invalid {field}: {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidInput(f"Invalid {field}: {value!r}")

def parse_bool(value, default=False):
    # Form posts send every value as text
    if value is None or value == '':
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')

def commit_or_fail(operation, row_id=None):
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        app.logger.error("%s failed for row %s: %s", operation, row_id, e)
        raise PersistenceFailure(operation, row_id, e)

def existing_reminder_keys(flock_id, template_id=None, statuses=None):
    query = Reminder.query.filter_by(flock_id=flock_id)
    if template_id is not None:
        query = query.filter_by(template_id=template_id)
    if statuses:
        query = query.filter(Reminder.status.in_(statuses))
    return {r.key for r in query.all()}

def _reminder_from_instance(inst):
    return Reminder(
        flock_id=inst.flock_id,
        house_id=inst.house_id,
        template_id=inst.template_id,
        reminder_type=inst.reminder_type or 'routine_task',
        title=inst.title,
        description=inst.description,
        due_date=inst.due_date,
        priority=inst.priority,
        status='pending',
    )

def create_reminders_from_templates(flock_id, template_ids, skip_existing=True, commit=True):
    """
    Expand each template for the flock and insert the resulting reminders.
    Reminders whose title and due date already exist for the flock are skipped.
    """
    if not template_ids:
        return 0
    flock = db.session.get(Flock, flock_id)
    if not flock:
        raise InvalidInput(f"Flock {flock_id} not found")

    templates = ReminderTemplate.query.filter(ReminderTemplate.id.in_(template_ids)).all()
    found = {t.id for t in templates}
    missing = [tid for tid in template_ids if tid not in found]
    if missing:
        raise InvalidInput(f"Templates not found: {missing}")

    existing = existing_reminder_keys(flock_id) if skip_existing else set()
    instances = []
    by_id = {t.id: t for t in templates}
    for tid in template_ids:
        instances.extend(expand_template(by_id[tid], flock))
    if skip_existing:
        instances = filter_new_instances(instances, existing)

    for inst in instances:
        db.session.add(_reminder_from_instance(inst))

    if commit:
        commit_or_fail('insert reminders', flock_id)
    else:
        db.session.flush()
    app.logger.info("Created %d reminders for flock %s from templates %s", len(instances), flock_id, template_ids)
    return len(instances)

def sync_flock_reminders_from_template(flock_id, template_id):
    """
    Regenerate a template's pending reminders for a flock.
    Completed and dismissed reminders are kept and not recreated.
    """
    flock = db.session.get(Flock, flock_id)
    if not flock:
        raise InvalidInput(f"Flock {flock_id} not found")
    template = db.session.get(ReminderTemplate, template_id)
    instances = expand_template(template, flock)

    keep = existing_reminder_keys(flock_id, template_id, statuses=['completed', 'dismissed'])
    Reminder.query.filter_by(flock_id=flock_id, template_id=template_id, status='pending').delete(synchronize_session=False)

    fresh = filter_new_instances(instances, keep)
    for inst in fresh:
        db.session.add(_reminder_from_instance(inst))
    commit_or_fail('sync reminders', flock_id)
    return len(fresh)

def remove_template_from_flock(flock_id, template_id):
    count = Reminder.query.filter_by(flock_id=flock_id, template_id=template_id).delete(synchronize_session=False)
    commit_or_fail('delete reminders', flock_id)
    return count

def get_applied_templates(flock_id):
    rows = db.session.query(Reminder.template_id).filter(
        Reminder.flock_id == flock_id, Reminder.template_id.isnot(None)
    ).distinct().all()
    return sorted(r[0] for r in rows)

def shift_flock_reminders(flock_id, days, commit=True):
    if not days:
        return 0
    reminders = Reminder.query.filter_by(flock_id=flock_id).all()
    for r in reminders:
        r.due_date = add_days(r.due_date, days)
    if commit:
        commit_or_fail('shift reminder dates', flock_id)
    return len(reminders)

def update_reminder_status(reminder_id, status, action_notes=None):
    reminder = db.session.get(Reminder, reminder_id)
    if not reminder:
        raise InvalidInput(f"Reminder {reminder_id} not found")
    reminder.status = check_status_transition(reminder.status, status)
    if reminder.status == 'completed':
        reminder.completed_at = datetime.utcnow()
    if action_notes:
        reminder.action_notes = action_notes
    commit_or_fail('update reminder status', reminder_id)
    return reminder

def add_category_to_bundle(template_id, category, position='start', replace=False):
    template = db.session.get(ReminderTemplate, template_id)
    if not template:
        raise InvalidInput(f"Template {template_id} not found")
    if not template.is_bundle:
        raise InvalidInput(f"Template {template_id} is not a bundle")

    if replace:
        result = upsert_category(template.bundle_config, category, position)
    else:
        result = merge_category(template.bundle_config, category, position)
    if not result.unchanged:
        template.bundle_config = dump_bundle_config(result.config)
        commit_or_fail('update bundle config', template_id)
    return result

def fix_bundle_day_names(template_id):
    template = db.session.get(ReminderTemplate, template_id)
    if not template or not template.is_bundle:
        raise InvalidInput(f"Bundle template {template_id} not found")
    config, changes = reconcile_bundle_day_names(template.bundle_config)
    if changes:
        template.bundle_config = dump_bundle_config(config)
        commit_or_fail('update bundle config', template_id)
    return changes

def delete_flock_cascade(flock_id):
    """
    Delete a flock and everything that points at it in one transaction.
    Sales order items keep their history with the flock link cleared.
    """
    flock = db.session.get(Flock, flock_id)
    if not flock:
        raise InvalidInput(f"Flock {flock_id} not found")
    counts = {}
    try:
        for model in FLOCK_DEPENDENTS:
            counts[model.__tablename__] = model.query.filter_by(flock_id=flock_id).delete(synchronize_session=False)
        counts['sales_order_items'] = SalesOrderItem.query.filter_by(flock_id=flock_id).update(
            {SalesOrderItem.flock_id: None}, synchronize_session=False)
        Flock.query.filter_by(id=flock_id).delete(synchronize_session=False)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        app.logger.error("Cascade delete of flock %s rolled back: %s", flock_id, e)
        raise PersistenceFailure('delete flock', flock_id, e)
    app.logger.info("Deleted flock %s with dependents %s", flock_id, counts)
    return counts

def repair_reminder_titles(dry_run=False, cancel_event=None, flock_id=None):
    """
    Rewrite "Day N" title prefixes that no longer match the reminder's due date.
    Each corrected row is committed on its own so one failure does not stop the run.
    """
    query = Reminder.query.filter(Reminder.title.ilike('day %'))
    if flock_id is not None:
        query = query.filter_by(flock_id=flock_id)
    reminders = query.order_by(Reminder.id).all()
    flocks = {f.id: f for f in Flock.query.all()}
    changes = []

    def repair(reminder):
        action = reconcile_due_date_from_title(reminder, flocks.get(reminder.flock_id))
        if action.is_skip:
            if action.reason != 'in sync':
                app.logger.debug("Skipping reminder %s: %s", reminder.id, action.reason)
            return False
        changes.append({'id': reminder.id, 'old_title': action.old_title, 'new_title': action.new_title})
        if dry_run:
            return True
        reminder.title = action.new_title
        commit_or_fail('update reminder title', reminder.id)
        app.logger.info("Fixed reminder %s: %r -> %r", reminder.id, action.old_title, action.new_title)
        return True

    summary = run_batch(reminders, repair, cancel_event=cancel_event, item_id=lambda r: r.id)
    summary.changes.extend(changes)
    return summary

# --- Error handlers ---

@app.errorhandler(InvalidInput)
def handle_invalid_input(e):
    # Drop rows flushed before the bad value was found
    db.session.rollback()
    return jsonify({'error': 'invalid_input', 'message': str(e)}), 400

@app.errorhandler(PersistenceFailure)
def handle_persistence_failure(e):
    return jsonify({'error': 'persistence_failure', 'message': str(e),
                    'operation': e.operation, 'row_id': e.row_id}), 500

# --- Routes ---

def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        return request.form.to_dict()
    if not isinstance(data, dict):
        raise InvalidInput("Request body must be a JSON object")
    return data

def _id_list(data, field):
    if request.form:
        values = request.form.getlist(field)
    else:
        values = data.get(field)
        if values is None:
            return []
        if not isinstance(values, list):
            raise InvalidInput(f"'{field}' must be a list of ids")
    return [parse_int(v, field) for v in values]

@app.route('/api/templates', methods=['GET', 'POST'])
def manage_templates():
    if request.method == 'POST':
        data = _json_body()
        name = (data.get('name') or '').strip()
        if not name:
            raise InvalidInput("Template name is required")
        template = ReminderTemplate(
            name=name,
            description=data.get('description'),
            reminder_type=data.get('reminder_type') or 'routine_task',
            priority=normalize_priority(data.get('priority')),
            day_offset=parse_int(data.get('day_offset'), 'day_offset', default=0),
            is_active=parse_bool(data.get('is_active'), default=True),
        )
        if data.get('bundle_config') is not None:
            template.is_bundle = True
            template.bundle_config = dump_bundle_config(parse_bundle_config(data['bundle_config']))
        db.session.add(template)
        commit_or_fail('insert template')
        return jsonify(template.to_dict()), 201

    query = ReminderTemplate.query
    if request.args.get('active') == '1':
        query = query.filter_by(is_active=True)
    templates = query.order_by(ReminderTemplate.name.asc()).all()
    return jsonify([t.to_dict() for t in templates])

@app.route('/api/templates/<int:id>')
def view_template(id):
    template = ReminderTemplate.query.get_or_404(id)
    return jsonify(template.to_dict())

@app.route('/api/templates/<int:id>/categories', methods=['POST'])
def add_template_category(id):
    ReminderTemplate.query.get_or_404(id)
    data = _json_body()
    category = data.get('category')
    if not isinstance(category, dict):
        raise InvalidInput("Request needs a 'category' object")
    result = add_category_to_bundle(
        id, category,
        position=data.get('position', 'start'),
        replace=parse_bool(data.get('replace')),
    )
    return jsonify({
        'unchanged': result.unchanged,
        'replaced': result.replaced,
        'categories': [c.key for c in result.config],
    })

@app.route('/api/templates/<int:id>/fix_day_names', methods=['POST'])
def fix_template_day_names(id):
    ReminderTemplate.query.get_or_404(id)
    changes = fix_bundle_day_names(id)
    return jsonify({'changes': [{'old': o, 'new': n} for o, n in changes]})

@app.route('/api/flocks', methods=['POST'])
def create_flock():
    data = _json_body()
    flock_number = (data.get('flock_number') or '').strip()
    if not flock_number:
        raise InvalidInput("Flock number is required")
    if Flock.query.filter_by(flock_number=flock_number).first():
        raise InvalidInput(f'Flock "{flock_number}" already exists')

    house = None
    house_name = (data.get('house_name') or '').strip()
    if house_name:
        house = House.query.filter_by(name=house_name).first()
        if not house:
            house = House(name=house_name)
            db.session.add(house)
            db.session.flush()

    flock = Flock(
        flock_number=flock_number,
        house_id=house.id if house else None,
        placement_date=parse_date(data.get('placement_date'), 'placement_date'),
        initial_count=parse_int(data.get('initial_count'), 'initial_count', default=0),
    )
    db.session.add(flock)
    db.session.flush()

    template_ids = _id_list(data, 'template_ids')
    count = create_reminders_from_templates(flock.id, template_ids, commit=False)
    commit_or_fail('insert flock')
    return jsonify({'id': flock.id, 'flock_number': flock.flock_number, 'reminder_count': count}), 201

@app.route('/api/flocks/<int:id>/edit', methods=['POST'])
def edit_flock(id):
    flock = Flock.query.get_or_404(id)
    data = _json_body()
    shifted = 0
    if data.get('placement_date'):
        new_date = parse_date(data['placement_date'], 'placement_date')
        days = (new_date - flock.placement_date).days
        flock.placement_date = new_date
        shifted = shift_flock_reminders(flock.id, days, commit=False)
    if data.get('initial_count') is not None:
        flock.initial_count = parse_int(data['initial_count'], 'initial_count')
    if data.get('status'):
        flock.status = data['status']
    commit_or_fail('update flock', flock.id)
    return jsonify({'id': flock.id, 'placement_date': flock.placement_date.isoformat(), 'shifted_reminders': shifted})

@app.route('/api/flocks/<int:id>/delete', methods=['POST'])
def delete_flock(id):
    Flock.query.get_or_404(id)
    counts = delete_flock_cascade(id)
    return jsonify({'deleted': id, 'dependents': counts})

@app.route('/api/flocks/<int:id>/templates')
def flock_templates(id):
    Flock.query.get_or_404(id)
    return jsonify({'template_ids': get_applied_templates(id)})

@app.route('/api/flocks/<int:id>/templates/<int:template_id>', methods=['POST'])
def apply_template(id, template_id):
    Flock.query.get_or_404(id)
    count = create_reminders_from_templates(id, [template_id])
    return jsonify({'reminder_count': count})

@app.route('/api/flocks/<int:id>/templates/<int:template_id>/remove', methods=['POST'])
def remove_template(id, template_id):
    Flock.query.get_or_404(id)
    count = remove_template_from_flock(id, template_id)
    return jsonify({'deleted': count})

@app.route('/api/flocks/<int:id>/templates/<int:template_id>/sync', methods=['POST'])
def sync_template(id, template_id):
    Flock.query.get_or_404(id)
    count = sync_flock_reminders_from_template(id, template_id)
    return jsonify({'new_reminder_count': count})

@app.route('/api/reminders')
def list_reminders():
    query = Reminder.query
    flock_id = request.args.get('flock_id', type=int)
    if flock_id is not None:
        query = query.filter_by(flock_id=flock_id)
    status = request.args.get('status')
    if status:
        query = query.filter_by(status=status)
    reminders = query.order_by(Reminder.due_date.asc(), Reminder.id.asc()).all()
    return jsonify([r.to_dict() for r in reminders])

@app.route('/api/reminders/<int:id>/status', methods=['POST'])
def set_reminder_status(id):
    Reminder.query.get_or_404(id)
    data = _json_body()
    reminder = update_reminder_status(id, data.get('status'), data.get('action_notes'))
    return jsonify(reminder.to_dict())

@app.route('/api/reminders/repair_titles', methods=['POST'])
def repair_titles():
    data = _json_body()
    dry_run = parse_bool(data.get('dry_run'))
    flock_id = data.get('flock_id')
    if flock_id is not None:
        flock_id = parse_int(flock_id, 'flock_id')
    summary = repair_reminder_titles(dry_run=dry_run, flock_id=flock_id)
    return jsonify(summary.as_dict())


if __name__ == '__main__':
    app.run(debug=True, host='0.0.0.0', port=5000)
