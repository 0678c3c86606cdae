import os
os.environ['DATABASE_URL'] = 'sqlite:///:memory:'

import unittest
import json
from datetime import date
from unittest import mock
from sqlalchemy.exc import OperationalError
from app import (
    app, db, House, Flock, ReminderTemplate, Reminder, FlockDailyRecord, VaccinationSchedule,
    HealthRecord, MortalityRecord, SalesOrderItem,
    create_reminders_from_templates, sync_flock_reminders_from_template, delete_flock_cascade,
    repair_reminder_titles, add_category_to_bundle, shift_flock_reminders, get_applied_templates,
)
from reminder_templates import InvalidInput, PersistenceFailure, dump_bundle_config, parse_bundle_config

BUNDLE = [
    {'category': 'vaccination', 'name': 'Vaccination', 'enabled': True, 'reminders': [
        {'dayOffset': 0, 'name': "Day 0 - Marek's Disease", 'priority': 'urgent', 'description': 'Day-old chicks'},
        {'dayOffset': 14, 'name': 'Day 14 - Gumboro', 'priority': 'high', 'description': ''},
    ]},
    {'category': 'biosecurity', 'name': 'Biosecurity', 'enabled': False, 'reminders': [
        {'dayOffset': 7, 'name': 'Day 7 - Weekly Audit', 'priority': 'medium', 'description': ''},
    ]},
    {'category': 'milestone', 'name': 'Milestones', 'enabled': True, 'reminders': [
        {'dayOffset': 35, 'name': 'Day 35 - Pre-Market Evaluation', 'priority': 'urgent', 'description': ''},
    ]},
]

class ReminderTestBase(unittest.TestCase):
    def setUp(self):
        app.config['TESTING'] = True
        self.app = app.test_client()
        self.ctx = app.app_context()
        self.ctx.push()
        db.create_all()

        h = House(name='H1')
        db.session.add(h)
        db.session.commit()

        f = Flock(house_id=h.id, flock_number='H1_240310_Batch1', placement_date=date(2024, 3, 10), initial_count=20000)
        db.session.add(f)

        single = ReminderTemplate(name='Clean House', reminder_type='house_preparation', priority='high', day_offset=-7)
        bundle = ReminderTemplate(name='Standard Broiler Cycle', is_bundle=True, bundle_config=json.dumps(BUNDLE))
        inactive = ReminderTemplate(name='Old Template', day_offset=3, is_active=False)
        db.session.add_all([single, bundle, inactive])
        db.session.commit()

        self.flock_id = f.id
        self.single_id = single.id
        self.bundle_id = bundle.id
        self.inactive_id = inactive.id

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        self.ctx.pop()

    def titles(self):
        return [r.title for r in Reminder.query.filter_by(flock_id=self.flock_id).order_by(Reminder.id).all()]

class ReminderHelpersTestCase(ReminderTestBase):
    def test_create_from_single_template(self):
        count = create_reminders_from_templates(self.flock_id, [self.single_id])
        self.assertEqual(count, 1)

        r = Reminder.query.first()
        self.assertEqual(r.due_date, date(2024, 3, 3))
        self.assertEqual(r.reminder_type, 'house_preparation')
        self.assertEqual(r.status, 'pending')
        self.assertEqual(r.template_id, self.single_id)

    def test_create_from_bundle_is_idempotent(self):
        self.assertEqual(create_reminders_from_templates(self.flock_id, [self.bundle_id]), 3)
        self.assertEqual(self.titles(), ["Day 0 - Marek's Disease", 'Day 14 - Gumboro', 'Day 35 - Pre-Market Evaluation'])

        self.assertEqual(create_reminders_from_templates(self.flock_id, [self.bundle_id]), 0)
        self.assertEqual(Reminder.query.count(), 3)
        self.assertEqual(get_applied_templates(self.flock_id), [self.bundle_id])

    def test_inactive_template_not_expanded(self):
        with self.assertRaises(InvalidInput):
            create_reminders_from_templates(self.flock_id, [self.inactive_id])
        self.assertEqual(Reminder.query.count(), 0)

    def test_missing_flock(self):
        with self.assertRaises(InvalidInput):
            create_reminders_from_templates(9999, [self.single_id])

    def test_sync_keeps_completed_reminders(self):
        create_reminders_from_templates(self.flock_id, [self.bundle_id])
        done = Reminder.query.filter_by(title='Day 14 - Gumboro').first()
        done.status = 'completed'
        db.session.commit()

        count = sync_flock_reminders_from_template(self.flock_id, self.bundle_id)

        self.assertEqual(count, 2)
        reminders = Reminder.query.filter_by(flock_id=self.flock_id).all()
        self.assertEqual(len(reminders), 3)
        self.assertEqual(sorted(r.status for r in reminders), ['completed', 'pending', 'pending'])

    def test_shift_reminders_on_placement_edit(self):
        create_reminders_from_templates(self.flock_id, [self.single_id])
        response = self.app.post(f'/api/flocks/{self.flock_id}/edit', json={'placement_date': '2024-03-15'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['shifted_reminders'], 1)

        self.assertEqual(db.session.get(Flock, self.flock_id).placement_date, date(2024, 3, 15))
        self.assertEqual(Reminder.query.first().due_date, date(2024, 3, 8))

    def test_shift_by_zero_days(self):
        create_reminders_from_templates(self.flock_id, [self.single_id])
        self.assertEqual(shift_flock_reminders(self.flock_id, 0), 0)

    def test_delete_flock_cascade(self):
        create_reminders_from_templates(self.flock_id, [self.bundle_id])
        db.session.add_all([
            FlockDailyRecord(flock_id=self.flock_id, record_date=date(2024, 3, 11), mortality=12),
            VaccinationSchedule(flock_id=self.flock_id, vaccine_name='ND Lasota', scheduled_date=date(2024, 3, 17)),
            HealthRecord(flock_id=self.flock_id, record_date=date(2024, 3, 12), notes='Normal'),
            MortalityRecord(flock_id=self.flock_id, record_date=date(2024, 3, 12), count=4),
            SalesOrderItem(flock_id=self.flock_id, description='Live birds', quantity=500),
        ])
        db.session.commit()

        counts = delete_flock_cascade(self.flock_id)

        self.assertEqual(counts['reminders'], 3)
        self.assertEqual(counts['sales_order_items'], 1)
        self.assertIsNone(db.session.get(Flock, self.flock_id))
        for model in (Reminder, FlockDailyRecord, VaccinationSchedule, HealthRecord, MortalityRecord):
            self.assertEqual(model.query.count(), 0)
        item = SalesOrderItem.query.first()
        self.assertIsNotNone(item)
        self.assertIsNone(item.flock_id)

    def test_delete_flock_cascade_rolls_back(self):
        create_reminders_from_templates(self.flock_id, [self.single_id])
        with mock.patch.object(db.session, 'commit', side_effect=OperationalError('DELETE', {}, Exception('locked'))):
            with self.assertRaises(PersistenceFailure) as cm:
                delete_flock_cascade(self.flock_id)
        self.assertEqual(cm.exception.operation, 'delete flock')
        self.assertEqual(cm.exception.row_id, self.flock_id)
        self.assertIsNotNone(db.session.get(Flock, self.flock_id))
        self.assertEqual(Reminder.query.count(), 1)

    def test_repair_titles(self):
        db.session.add_all([
            Reminder(flock_id=self.flock_id, title='Day 5: Vaccinate', due_date=date(2024, 3, 13)),
            Reminder(flock_id=self.flock_id, title='Day 3: Weigh', due_date=date(2024, 3, 13)),
            Reminder(flock_id=self.flock_id, title='Vaccination Due', due_date=date(2024, 3, 13)),
            Reminder(flock_id=None, title='Day 9: Test', due_date=date(2024, 3, 13)),
        ])
        db.session.commit()

        preview = repair_reminder_titles(dry_run=True)
        self.assertEqual(preview.succeeded, 1)
        self.assertIn('Day 5: Vaccinate', self.titles())

        summary = repair_reminder_titles()
        self.assertEqual((summary.succeeded, summary.skipped, summary.failed), (1, 2, 0))
        self.assertEqual(summary.changes[0]['new_title'], 'Day 3: Vaccinate')
        self.assertIn('Day 3: Vaccinate', self.titles())

        again = repair_reminder_titles()
        self.assertEqual(again.succeeded, 0)

    def test_add_category_to_bundle(self):
        prep = {'category': 'house_preparation', 'name': 'House Preparation', 'enabled': True, 'reminders': [
            {'dayOffset': -7, 'name': 'Day -7: Sanitize House', 'priority': 'urgent'},
        ]}
        result = add_category_to_bundle(self.bundle_id, prep)
        self.assertFalse(result.unchanged)

        stored = parse_bundle_config(db.session.get(ReminderTemplate, self.bundle_id).bundle_config)
        self.assertEqual([c.key for c in stored], ['house_preparation', 'vaccination', 'biosecurity', 'milestone'])

        self.assertTrue(add_category_to_bundle(self.bundle_id, prep).unchanged)

        with self.assertRaises(InvalidInput):
            add_category_to_bundle(self.single_id, prep)

class ReminderRoutesTestCase(ReminderTestBase):
    def test_apply_and_list(self):
        response = self.app.post(f'/api/flocks/{self.flock_id}/templates/{self.bundle_id}')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['reminder_count'], 3)

        data = self.app.get(f'/api/reminders?flock_id={self.flock_id}').get_json()
        self.assertEqual([r['due_date'] for r in data], ['2024-03-10', '2024-03-24', '2024-04-14'])
        self.assertEqual([r['day'] for r in data], [0, 14, 35])

        applied = self.app.get(f'/api/flocks/{self.flock_id}/templates').get_json()
        self.assertEqual(applied['template_ids'], [self.bundle_id])

        response = self.app.post(f'/api/flocks/{self.flock_id}/templates/{self.bundle_id}/remove')
        self.assertEqual(response.get_json()['deleted'], 3)

    def test_inactive_template_returns_400(self):
        response = self.app.post(f'/api/flocks/{self.flock_id}/templates/{self.inactive_id}')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()['error'], 'invalid_input')

    def test_create_flock_with_templates(self):
        response = self.app.post('/api/flocks', json={
            'flock_number': 'H2_240401_Batch1',
            'house_name': 'H2',
            'placement_date': '2024-04-01',
            'template_ids': [self.single_id, self.bundle_id],
        })
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()['reminder_count'], 4)

        flock = Flock.query.filter_by(flock_number='H2_240401_Batch1').first()
        self.assertEqual(flock.house.name, 'H2')
        self.assertEqual(Reminder.query.filter_by(flock_id=flock.id).count(), 4)

    def test_duplicate_flock_number(self):
        response = self.app.post('/api/flocks', json={'flock_number': 'H1_240310_Batch1', 'placement_date': '2024-04-01'})
        self.assertEqual(response.status_code, 400)

    def test_status_transitions(self):
        create_reminders_from_templates(self.flock_id, [self.single_id])
        rid = Reminder.query.first().id

        response = self.app.post(f'/api/reminders/{rid}/status', json={'status': 'completed', 'action_notes': 'Done by crew'})
        self.assertEqual(response.status_code, 200)
        body = response.get_json()
        self.assertEqual(body['status'], 'completed')
        self.assertIsNotNone(body['completed_at'])

        response = self.app.post(f'/api/reminders/{rid}/status', json={'status': 'pending'})
        self.assertEqual(response.status_code, 400)

    def test_template_crud(self):
        response = self.app.post('/api/templates', json={'name': 'Footbath Change', 'day_offset': 3, 'priority': 'low'})
        self.assertEqual(response.status_code, 201)
        tid = response.get_json()['id']
        self.assertEqual(self.app.get(f'/api/templates/{tid}').get_json()['day_offset'], 3)

        response = self.app.post('/api/templates', json={'name': 'Broken', 'bundle_config': [{'enabled': True}]})
        self.assertEqual(response.status_code, 400)

        self.assertEqual(self.app.get('/api/templates/9999').status_code, 404)
        names = [t['name'] for t in self.app.get('/api/templates?active=1').get_json()]
        self.assertNotIn('Old Template', names)

    def test_template_flags_from_form_and_text(self):
        response = self.app.post('/api/templates', data={'name': 'Litter Check', 'is_active': '0', 'day_offset': '5'})
        self.assertEqual(response.status_code, 201)
        body = response.get_json()
        self.assertFalse(body['is_active'])
        self.assertEqual(body['day_offset'], 5)

        response = self.app.post('/api/templates', json={'name': 'Footbath', 'is_active': 'false'})
        self.assertFalse(response.get_json()['is_active'])

        response = self.app.post('/api/templates', json={'name': 'Footbath', 'is_active': True})
        self.assertTrue(response.get_json()['is_active'])

        tid = self.app.post('/api/templates', data={'name': 'Dust Fans', 'is_active': 'false'}).get_json()['id']
        response = self.app.post(f'/api/flocks/{self.flock_id}/templates/{tid}')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(Reminder.query.count(), 0)

    def test_bad_numbers_return_400(self):
        response = self.app.post('/api/templates', json={'name': 'T', 'day_offset': 'abc'})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()['error'], 'invalid_input')

        response = self.app.post('/api/flocks', json={
            'flock_number': 'H2_240401_Batch1', 'placement_date': '2024-04-01', 'initial_count': 'lots'})
        self.assertEqual(response.status_code, 400)

        response = self.app.post('/api/flocks', json={
            'flock_number': 'H2_240401_Batch1', 'placement_date': '2024-04-01', 'template_ids': ['x']})
        self.assertEqual(response.status_code, 400)

        response = self.app.post(f'/api/flocks/{self.flock_id}/edit', json={'initial_count': '2k'})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(db.session.get(Flock, self.flock_id).initial_count, 20000)

        self.assertEqual(Flock.query.count(), 1)

    def test_template_ids_from_form_post(self):
        response = self.app.post('/api/flocks', data={
            'flock_number': 'H2_240401_Batch1',
            'placement_date': '2024-04-01',
            'template_ids': [str(self.single_id), str(self.bundle_id)],
        })
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()['reminder_count'], 4)

        response = self.app.post('/api/flocks', data={
            'flock_number': 'H3_240401_Batch1',
            'placement_date': '2024-04-01',
            'template_ids': str(self.single_id),
        })
        self.assertEqual(response.get_json()['reminder_count'], 1)

    def test_template_ids_must_be_a_list(self):
        response = self.app.post('/api/flocks', json={
            'flock_number': 'H2_240401_Batch1', 'placement_date': '2024-04-01', 'template_ids': '12'})
        self.assertEqual(response.status_code, 400)
        self.assertIsNone(Flock.query.filter_by(flock_number='H2_240401_Batch1').first())

    def test_json_array_body_returns_400(self):
        for url in ('/api/templates', '/api/flocks', '/api/reminders/repair_titles'):
            response = self.app.post(url, json=[1, 2])
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.get_json()['error'], 'invalid_input')

    def test_category_route(self):
        prep = {'category': 'house_preparation', 'name': 'House Preparation', 'enabled': True, 'reminders': []}
        response = self.app.post(f'/api/templates/{self.bundle_id}/categories', json={'category': prep, 'position': 'end'})
        self.assertEqual(response.get_json()['categories'][-1], 'house_preparation')

        response = self.app.post(f'/api/templates/{self.bundle_id}/categories', json={'category': prep})
        self.assertTrue(response.get_json()['unchanged'])

    def test_fix_day_names_route(self):
        bundle = db.session.get(ReminderTemplate, self.bundle_id)
        config = json.loads(bundle.bundle_config)
        config[0]['reminders'][1]['name'] = 'Day 12 - Gumboro'
        bundle.bundle_config = dump_bundle_config(parse_bundle_config(config))
        db.session.commit()

        response = self.app.post(f'/api/templates/{self.bundle_id}/fix_day_names')
        self.assertEqual(response.get_json()['changes'], [{'old': 'Day 12 - Gumboro', 'new': 'Day 14 - Gumboro'}])

    def test_delete_route(self):
        response = self.app.post(f'/api/flocks/{self.flock_id}/delete')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.app.post(f'/api/flocks/{self.flock_id}/delete').status_code, 404)

    def test_repair_route(self):
        db.session.add(Reminder(flock_id=self.flock_id, title='Day 5: Vaccinate', due_date=date(2024, 3, 13)))
        db.session.commit()

        body = self.app.post('/api/reminders/repair_titles', json={'dry_run': True}).get_json()
        self.assertEqual(body['succeeded'], 1)
        self.assertEqual(body['changes'][0]['new_title'], 'Day 3: Vaccinate')
        self.assertEqual(Reminder.query.first().title, 'Day 5: Vaccinate')

if __name__ == '__main__':
    unittest.main()
