from decimal import Decimal

import pytest

from app import create_app
from config import TestingConfig
from models import db, Payable, User


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def session(app):
    return db.session


def make_user(username, password='secret'):
    user = User(username=username)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def user(app):
    return make_user('alice')


@pytest.fixture
def other_user(app):
    return make_user('bob')


@pytest.fixture
def make_payable(session):
    def _make(user, amount, paid_amount='0', **fields):
        payable = Payable(
            user_id=user.id,
            name=fields.pop('name', 'Car loan'),
            category=fields.pop('category', 'Personal'),
            amount=Decimal(amount),
            paid_amount=Decimal(paid_amount),
            is_paid=Decimal(paid_amount) == Decimal(amount),
            **fields,
        )
        session.add(payable)
        session.commit()
        return payable
    return _make


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_client(client, user):
    response = client.post('/login', data={'username': 'alice', 'password': 'secret'})
    assert response.status_code == 302
    return client
