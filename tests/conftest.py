from datetime import datetime, timedelta

import pytest

from app import create_app
from models import RentPlan, RentSlab, db


START = datetime(2024, 1, 10, 9, 30)

TEST_CONFIG = {
    'TESTING': True,
    'SECRET_KEY': 'test',
    'SQLALCHEMY_DATABASE_URI': 'sqlite://',
}

WEEKLY_SLAB = {'trips': '0-50', 'rentDay': 500, 'weeklyRent': 3000, 'accidentalCover': 105}


def days(n: int) -> datetime:
    return START + timedelta(days=n)


@pytest.fixture
def app_factory():
    """Build apps on a fresh in-memory database, each with its context pushed."""
    contexts = []

    def factory(**overrides):
        app = create_app({**TEST_CONFIG, **overrides})
        ctx = app.app_context()
        ctx.push()
        db.create_all()
        contexts.append(ctx)
        return app

    yield factory

    for ctx in reversed(contexts):
        db.session.remove()
        db.drop_all()
        ctx.pop()


@pytest.fixture
def app(app_factory):
    return app_factory()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app):
    return app.extensions['fleet_rent']


@pytest.fixture
def make_selection(services):
    """Create a weekly selection: deposit 5000, 500/day, cover 105."""
    counter = {'n': 0}

    def factory(**overrides):
        counter['n'] += 1
        kwargs = {
            'subject_mobile': f'98765000{counter["n"]:02d}',
            'plan_name': 'Weekly Standard',
            'plan_type': 'weekly',
            'security_deposit': 5000,
            'slab': dict(WEEKLY_SLAB),
            'subject_id': f'driver-{counter["n"]}',
            'subject_username': 'ravi',
            'now': START,
        }
        kwargs.update(overrides)
        return services['selections'].create_selection(**kwargs)

    return factory


@pytest.fixture
def plans(app):
    weekly = RentPlan(name='Weekly Standard', vehicle_type='EV', security_deposit=5000)
    weekly.slabs = [
        RentSlab(plan_type='weekly', position=0, trips='0-50', rent_day=500, weekly_rent=3000,
                 accidental_cover=105, acceptance_rate=60),
        RentSlab(plan_type='weekly', position=1, trips='51-80', rent_day=450, weekly_rent=2700),
    ]
    daily = RentPlan(name='Daily Flex', vehicle_type='EV', security_deposit=2000)
    daily.slabs = [RentSlab(plan_type='daily', position=0, trips='any', rent_day=600, weekly_rent=0)]
    db.session.add_all([weekly, daily])
    db.session.commit()
    return {'weekly': weekly, 'daily': daily}
