from decimal import Decimal

import notifications
from models import Budget, Payable, User


def test_register_and_login(client, session):
    response = client.post('/register', data={'username': 'carol', 'password': 'pw'})
    assert response.status_code == 302
    assert session.query(User).filter_by(username='carol').count() == 1

    response = client.post('/register', data={'username': 'carol', 'password': 'pw'}, follow_redirects=True)
    assert b'Username already exists' in response.data

    response = client.post('/login', data={'username': 'carol', 'password': 'wrong'})
    assert b'Invalid credentials' in response.data
    response = client.post('/login', data={'username': 'carol', 'password': 'pw'})
    assert response.status_code == 302


def test_dashboard_requires_login(client):
    response = client.get('/')
    assert response.status_code == 302
    assert '/login' in response.headers['Location']


def test_dashboard_renders(auth_client):
    response = auth_client.get('/')
    assert response.status_code == 200
    assert b'Dashboard' in response.data
    assert auth_client.get('/report').status_code == 200


def test_pay_from_dashboard(auth_client, session, user):
    auth_client.post('/payables', data={'name': 'Gym', 'amount': '90', 'category': 'Health'})
    payable = session.query(Payable).filter_by(user_id=user.id).one()

    response = auth_client.post(f'/payables/{payable.id}/pay', data={'amount': '100'},
                                follow_redirects=True)
    assert b'Payment exceeds remaining amount. Remaining: 90.00' in response.data

    response = auth_client.post(f'/payables/{payable.id}/pay', data={'amount': '90'}, follow_redirects=True)
    assert b'Gym fully paid!' in response.data
    assert session.get(Payable, payable.id).is_paid is True


def test_set_budget_from_dashboard(auth_client, session, user):
    response = auth_client.post('/set-budget', data={'category': 'Food', 'amount': '120', 'period': 'weekly'},
                                follow_redirects=True)
    assert b'Budget created: Food' in response.data
    budget = session.query(Budget).filter_by(user_id=user.id).one()
    assert budget.amount == Decimal('120.00')
    assert budget.period == 'weekly'

    response = auth_client.post('/set-budget', data={'category': 'Food', 'amount': '0'}, follow_redirects=True)
    assert b'Invalid category or amount' in response.data


def test_add_expense_from_dashboard(auth_client):
    response = auth_client.post('/add', data={'category': 'Coffee', 'amount': '3.40'}, follow_redirects=True)
    assert b'Coffee' in response.data


def test_navbar_shows_unread_count(auth_client, session, user):
    response = auth_client.get('/')
    assert b'#payables' in response.data
    assert b'#notifications' in response.data
    assert b'unread-badge' not in response.data

    notifications.create(session, user.id, 'system', 'Welcome', 'Hello')
    notifications.create(session, user.id, 'system', 'Reminder', 'Pay rent')
    response = auth_client.get('/report')
    assert b'id="unread-badge">2</span>' in response.data

    auth_client.post('/notifications/read')
    assert b'unread-badge' not in auth_client.get('/').data


def test_dashboard_shows_current_period(auth_client, user):
    response = auth_client.get('/')
    assert b'id="current-period"' in response.data
    assert b'50-30-20 rule' in response.data


def test_register_with_display_name(client, session):
    client.post('/register', data={'username': 'dave', 'name': ' Dave ', 'password': 'pw'})
    assert session.query(User).filter_by(username='dave').one().name == 'Dave'
    client.post('/login', data={'username': 'dave', 'password': 'pw'})
    assert b'Hi, Dave' in client.get('/').data
