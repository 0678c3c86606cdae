import os
import sys
from app import app, add_category_to_bundle

DEFAULT_BUNDLE_ID = int(os.getenv('BUNDLE_TEMPLATE_ID', '240001'))

HOUSE_PREPARATION = {
    'category': 'house_preparation',
    'name': 'House Preparation',
    'enabled': True,
    'reminders': [
        {
            'dayOffset': -7,
            'name': 'Day -7: Sanitize House',
            'description': 'Remove all old litter and organic matter. Wash walls, floors and equipment with detergent, '
                           'apply an approved disinfectant for the full contact time and let the house dry completely.',
            'priority': 'urgent',
        },
        {
            'dayOffset': -5,
            'name': 'Day -5: Flush Water System',
            'description': 'Flush the header tank and all nipple lines with high-level chlorine (140 ppm), leave 24 hours, '
                           'then flush with clean water. Replace worn nipples and check flow at several points.',
            'priority': 'high',
        },
        {
            'dayOffset': -3,
            'name': 'Day -3: Prepare Brooder Area',
            'description': 'Spread 5-10cm of fresh, dry shavings. Lay chick paper over at least half of the brooding area '
                           'and set fountains at 14-16 per 1,000 chicks. Nipples at chick eye level.',
            'priority': 'high',
        },
        {
            'dayOffset': -1,
            'name': 'Day -1: Pre-heat House',
            'description': 'Bring the house to 32-35°C at chick level with 30-50% relative humidity. '
                           'Check temperature uniformity with several thermometers and verify minimum ventilation.',
            'priority': 'urgent',
        },
        {
            'dayOffset': 0,
            'name': 'Day 0: Final Inspection Before Placement',
            'description': 'Walk the house: temperature, humidity, drinkers, feed on paper, 30-40 lux lighting, '
                           'draft-free ventilation, footbaths and visitor log. Record all readings.',
            'priority': 'urgent',
        },
    ],
}

def add_house_prep(template_id=DEFAULT_BUNDLE_ID, replace=False):
    with app.app_context():
        result = add_category_to_bundle(template_id, HOUSE_PREPARATION, position='start', replace=replace)

        if result.unchanged:
            print("House Preparation category already exists, skipping...")
        elif result.replaced:
            print("Updated existing House Preparation category")
        else:
            print("House Preparation category added at the beginning")

        print(f"Total categories now: {len(result.config)}")
        print(f"Categories: {', '.join(c.key for c in result.config)}")
        return result

if __name__ == '__main__':
    args = [a for a in sys.argv[1:] if not a.startswith('--')]
    template_id = int(args[0]) if args else DEFAULT_BUNDLE_ID
    add_house_prep(template_id, replace='--replace' in sys.argv)
