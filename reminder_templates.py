from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional, Tuple
import json
import re

PRIORITIES = ('urgent', 'high', 'medium', 'low')
PRIORITY_ALIASES = {'normal': 'medium'}

REMINDER_STATUSES = ('pending', 'completed', 'dismissed')
STATUS_TRANSITIONS = {
    'pending': ('completed', 'dismissed'),
    'completed': (),
    'dismissed': (),
}

# Leading "Day <n>" token, e.g. "Day -7: Sanitize House" or "day 14 - Gumboro"
_day_re = re.compile(r'^Day\s+([-+]?\d+)', re.IGNORECASE)

SKIP_NO_PATTERN = 'no matching pattern'
SKIP_NO_FLOCK = 'flock not found'
SKIP_IN_SYNC = 'in sync'


class InvalidInput(ValueError):
    """Raised when a template, flock or bundle document cannot be used."""


class PersistenceFailure(RuntimeError):
    """A store write failed. Carries the operation and row for follow-up."""

    def __init__(self, operation, row_id=None, cause=None):
        self.operation = operation
        self.row_id = row_id
        self.cause = cause
        msg = f"{operation} failed"
        if row_id is not None:
            msg += f" (row {row_id})"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)


def normalize_priority(value, default='medium'):
    if value is None or value == '':
        return default
    p = str(value).strip().lower()
    p = PRIORITY_ALIASES.get(p, p)
    if p not in PRIORITIES:
        raise InvalidInput(f"Unknown priority: {value!r}")
    return p


def to_calendar_date(value):
    """
    Reduce an anchor or due value to a calendar date.
    Aware datetimes are converted to UTC first; naive datetimes are taken as UTC.
    Strings must be ISO formatted.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return to_calendar_date(datetime.fromisoformat(value.strip()))
        except ValueError:
            raise InvalidInput(f"Invalid date: {value!r}")
    raise InvalidInput(f"Invalid date: {value!r}")


def add_days(anchor, offset):
    return to_calendar_date(anchor) + timedelta(days=int(offset))


def day_number(due_date, placement_date):
    return (to_calendar_date(due_date) - to_calendar_date(placement_date)).days


# --- Bundle documents ---

@dataclass(frozen=True)
class BundleReminder:
    day_offset: int
    name: str
    description: str = ''
    priority: str = 'medium'
    reminder_type: Optional[str] = None

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict):
            raise InvalidInput(f"Bundle reminder must be an object, got {type(data).__name__}")
        name = data.get('name') or data.get('title')
        if not name:
            raise InvalidInput("Bundle reminder is missing 'name'")
        offset = data.get('dayOffset')
        if isinstance(offset, bool) or not isinstance(offset, int):
            raise InvalidInput(f"Bundle reminder '{name}' has invalid 'dayOffset': {offset!r}")
        return cls(
            day_offset=offset,
            name=name,
            description=data.get('description') or '',
            priority=normalize_priority(data.get('priority')),
            reminder_type=data.get('reminderType'),
        )

    def to_dict(self):
        d = {
            'dayOffset': self.day_offset,
            'name': self.name,
            'description': self.description,
            'priority': self.priority,
        }
        if self.reminder_type:
            d['reminderType'] = self.reminder_type
        return d


@dataclass(frozen=True)
class BundleCategory:
    category: Optional[str]
    name: Optional[str]
    enabled: bool = True
    reminders: Tuple[BundleReminder, ...] = field(default_factory=tuple)

    @property
    def key(self):
        return self.category or self.name

    @classmethod
    def from_dict(cls, data):
        if isinstance(data, BundleCategory):
            return data
        if not isinstance(data, dict):
            raise InvalidInput(f"Bundle category must be an object, got {type(data).__name__}")
        category = data.get('category')
        name = data.get('name')
        if not category and not name:
            raise InvalidInput("Bundle category needs a 'category' key or a 'name'")
        reminders = data.get('reminders') or []
        if not isinstance(reminders, list):
            raise InvalidInput(f"Category '{category or name}': 'reminders' must be a list")
        return cls(
            category=category,
            name=name,
            # Stored categories without the flag were never expanded
            enabled=bool(data.get('enabled', False)),
            reminders=tuple(BundleReminder.from_dict(r) for r in reminders),
        )

    def to_dict(self):
        d = {}
        if self.category:
            d['category'] = self.category
        if self.name:
            d['name'] = self.name
        d['enabled'] = self.enabled
        d['reminders'] = [r.to_dict() for r in self.reminders]
        return d

    def matches(self, other):
        if self.category and other.category and self.category == other.category:
            return True
        return bool(self.name and other.name and self.name == other.name)


def parse_bundle_config(raw):
    """
    Validate a stored bundle document (JSON text or already-decoded list)
    into a tuple of BundleCategory records.
    """
    if raw is None:
        raise InvalidInput("Bundle template has no bundle configuration")
    if isinstance(raw, (bytes, str)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise InvalidInput(f"Bundle configuration is not valid JSON: {e}")
    if isinstance(raw, tuple) and all(isinstance(c, BundleCategory) for c in raw):
        categories = raw
    elif isinstance(raw, list):
        categories = tuple(BundleCategory.from_dict(c) for c in raw)
    else:
        raise InvalidInput("Bundle configuration must be a JSON array of categories")

    seen = set()
    for c in categories:
        if c.category:
            if c.category in seen:
                raise InvalidInput(f"Duplicate bundle category key: {c.category}")
            seen.add(c.category)
    return categories


def dump_bundle_config(categories):
    return json.dumps([c.to_dict() for c in categories])


# --- Template expansion ---

@dataclass(frozen=True)
class ReminderInstance:
    title: str
    description: str
    due_date: date
    day_offset: int
    reminder_type: Optional[str]
    priority: str
    flock_id: Optional[int] = None
    house_id: Optional[int] = None
    template_id: Optional[int] = None
    category: Optional[str] = None

    @property
    def key(self):
        return reminder_key(self.title, self.due_date)


def reminder_key(title, due_date):
    return f"{title}|{to_calendar_date(due_date).isoformat()}"


def _anchor(flock):
    if flock is None:
        raise InvalidInput("Flock not found")
    placement = getattr(flock, 'placement_date', None)
    if placement is None:
        raise InvalidInput(f"Flock {getattr(flock, 'id', None)} has no placement date")
    return to_calendar_date(placement)


def expand_template(template, flock) -> List[ReminderInstance]:
    """
    Expand a single or bundle template into concrete reminders for one flock.
    Bundle output keeps category order, then reminder order inside each category.
    """
    if template is None:
        raise InvalidInput("Template not found")
    if not template.is_active:
        raise InvalidInput(f"Template {template.id} ({template.name}) is inactive")
    placement = _anchor(flock)
    flock_number = getattr(flock, 'flock_number', None) or getattr(flock, 'id', '')

    common = dict(
        flock_id=getattr(flock, 'id', None),
        house_id=getattr(flock, 'house_id', None),
        template_id=template.id,
    )

    if not template.is_bundle:
        title = template.name
        return [ReminderInstance(
            title=title,
            description=template.description or f"{title} for flock {flock_number}",
            due_date=add_days(placement, template.day_offset),
            day_offset=template.day_offset,
            reminder_type=template.reminder_type,
            priority=normalize_priority(template.priority),
            **common
        )]

    instances = []
    for category in parse_bundle_config(template.bundle_config):
        if not category.enabled:
            continue
        for r in category.reminders:
            instances.append(ReminderInstance(
                title=r.name,
                description=r.description or f"{r.name} for flock {flock_number}",
                due_date=add_days(placement, r.day_offset),
                day_offset=r.day_offset,
                reminder_type=r.reminder_type or category.category,
                priority=r.priority,
                category=category.key,
                **common
            ))
    return instances


def filter_new_instances(instances, existing_keys):
    seen = set(existing_keys)
    fresh = []
    for inst in instances:
        if inst.key in seen:
            continue
        seen.add(inst.key)
        fresh.append(inst)
    return fresh


# --- Bundle editing ---

@dataclass(frozen=True)
class MergeResult:
    config: Tuple[BundleCategory, ...]
    unchanged: bool
    replaced: bool = False

    @property
    def already_present(self):
        return self.unchanged


def _insert(categories, new_category, position):
    if position == 'start':
        return (new_category,) + categories
    if position == 'end':
        return categories + (new_category,)
    raise InvalidInput(f"Unknown insert position: {position!r}")


def merge_category(bundle_config, new_category, position='start'):
    """Add a category unless one with the same key or name is already there."""
    categories = parse_bundle_config(bundle_config)
    new_category = BundleCategory.from_dict(new_category)
    if any(c.matches(new_category) for c in categories):
        return MergeResult(config=categories, unchanged=True)
    return MergeResult(config=_insert(categories, new_category, position), unchanged=False)


def upsert_category(bundle_config, new_category, position='start'):
    categories = parse_bundle_config(bundle_config)
    new_category = BundleCategory.from_dict(new_category)
    for i, c in enumerate(categories):
        if c.matches(new_category):
            if c == new_category:
                return MergeResult(config=categories, unchanged=True)
            updated = categories[:i] + (new_category,) + categories[i + 1:]
            return MergeResult(config=updated, unchanged=False, replaced=True)
    return MergeResult(config=_insert(categories, new_category, position), unchanged=False)


# --- Title repair ---

@dataclass(frozen=True)
class RepairAction:
    kind: str  # 'repair' or 'skip'
    reason: str
    new_title: Optional[str] = None
    old_title: Optional[str] = None
    title_day: Optional[int] = None
    actual_day: Optional[int] = None

    @property
    def is_skip(self):
        return self.kind == 'skip'


def _skip(reason, **kwargs):
    return RepairAction(kind='skip', reason=reason, **kwargs)


def replace_day_token(title, day):
    return _day_re.sub(f"Day {day}", title, count=1)


def title_day(title):
    if not isinstance(title, str):
        return None
    m = _day_re.match(title)
    return int(m.group(1)) if m else None


def reconcile_due_date_from_title(reminder, flock):
    """
    Compare the "Day N" prefix of a reminder title with the day number
    recomputed from the flock's placement date. Never raises.
    """
    title = getattr(reminder, 'title', None)
    if not isinstance(title, str):
        title = ''
    t_day = title_day(title)
    if t_day is None:
        return _skip(SKIP_NO_PATTERN, old_title=title)
    if flock is None or getattr(flock, 'placement_date', None) is None:
        return _skip(SKIP_NO_FLOCK, old_title=title, title_day=t_day)
    try:
        actual = day_number(reminder.due_date, flock.placement_date)
    except (InvalidInput, AttributeError, TypeError) as e:
        return _skip(f"invalid dates: {e}", old_title=title, title_day=t_day)
    if actual == t_day:
        return _skip(SKIP_IN_SYNC, old_title=title, title_day=t_day, actual_day=actual)
    return RepairAction(
        kind='repair',
        reason='drift',
        new_title=replace_day_token(title, actual),
        old_title=title,
        title_day=t_day,
        actual_day=actual,
    )


def reconcile_bundle_day_names(bundle_config):
    """Rewrite bundle reminder names whose "Day N" prefix disagrees with dayOffset."""
    categories = parse_bundle_config(bundle_config)
    changes = []
    fixed = []
    for c in categories:
        reminders = []
        for r in c.reminders:
            n = title_day(r.name)
            if n is not None and n != r.day_offset:
                new_name = replace_day_token(r.name, r.day_offset)
                changes.append((r.name, new_name))
                r = replace(r, name=new_name)
            reminders.append(r)
        fixed.append(replace(c, reminders=tuple(reminders)))
    return tuple(fixed), changes


# --- Status ---

def check_status_transition(current, new):
    if new not in REMINDER_STATUSES:
        raise InvalidInput(f"Unknown reminder status: {new!r}")
    if new not in STATUS_TRANSITIONS.get(current, ()):
        raise InvalidInput(f"Cannot move reminder from '{current}' to '{new}'")
    return new


# --- Batches ---

@dataclass
class BatchSummary:
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled: bool = False
    errors: list = field(default_factory=list)
    changes: list = field(default_factory=list)

    @property
    def total(self):
        return self.succeeded + self.skipped + self.failed

    def as_dict(self):
        return {
            'succeeded': self.succeeded,
            'skipped': self.skipped,
            'failed': self.failed,
            'cancelled': self.cancelled,
            'errors': [{'item': item, 'error': msg} for item, msg in self.errors],
            'changes': list(self.changes),
        }


def run_batch(items, handler, cancel_event=None, item_id=None):
    """
    Apply handler to each item on its own. A truthy return counts as success,
    False/None as a skip; an exception is recorded and the batch moves on.
    """
    summary = BatchSummary()
    for item in items:
        if cancel_event is not None and cancel_event.is_set():
            summary.cancelled = True
            break
        try:
            outcome = handler(item)
        except Exception as e:
            summary.failed += 1
            summary.errors.append((item_id(item) if item_id else item, str(e)))
            continue
        if outcome:
            summary.succeeded += 1
        else:
            summary.skipped += 1
    return summary
