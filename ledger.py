import logging
from datetime import date, datetime, timedelta
from decimal import Decimal

import pandas as pd

import notifications
from errors import InvalidInput, NotFound
from models import Budget, Expense, EXPENSE_TYPES, parse_datetime, parse_money, utcnow

log = logging.getLogger(__name__)


def create_expense(session, user_id, fields):
    """Record an income or expense entry.

    Expenses also produce an "expense recorded" notification, carrying
    this month's usage of the category's monthly budget when one exists.
    """
    if any(fields.get(k) in (None, '') for k in ('amount', 'type', 'category', 'date')):
        raise InvalidInput('Missing required fields')
    amount = parse_money(fields['amount'])
    if fields['type'] not in EXPENSE_TYPES:
        raise InvalidInput('Type must be either "income" or "expense"')
    category = str(fields['category']).strip()
    if not category:
        raise InvalidInput('Missing required fields')

    expense = Expense(
        user_id=user_id,
        amount=amount,
        type=fields['type'],
        category=category,
        date=parse_datetime(fields['date']),
        notes=fields.get('notes') or None,
    )
    session.add(expense)
    session.commit()

    if expense.type == 'expense':
        budget = session.query(Budget).filter_by(user_id=user_id, category=category, period='monthly').first()
        budget_status = None
        if budget is not None:
            now = utcnow()
            month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
            spent = notifications.category_spending(session, user_id, category, month_start, now)
            budget_status = (spent, budget.amount)
        notifications.notify_expense_added(session, user_id, expense, budget_status)
    return expense


def list_expenses(session, user_id):
    return (session.query(Expense).filter_by(user_id=user_id)
            .order_by(Expense.date.desc(), Expense.id.desc()).all())


def delete_expense(session, expense_id, user_id):
    expense = session.query(Expense).filter_by(id=expense_id, user_id=user_id).first()
    if expense is None:
        raise NotFound('Expense not found')
    session.delete(expense)
    session.commit()


def summary_range(rng='month', start=None, end=None, today=None):
    # Params: range=month|year, start=YYYY-MM-DD, end=YYYY-MM-DD
    if start and end:
        try:
            start_date = datetime.strptime(start, '%Y-%m-%d').date()
            end_date = datetime.strptime(end, '%Y-%m-%d').date()
        except ValueError:
            raise InvalidInput('Dates must be YYYY-MM-DD')
        return start_date, end_date
    today = today or date.today()
    if rng == 'year':
        return today.replace(month=1, day=1), today
    return today.replace(day=1), today


def spending_summary(session, user_id, start_date, end_date):
    """Total spend per category between two dates (inclusive), largest first."""
    q = session.query(Expense).filter(
        Expense.user_id == user_id,
        Expense.type == 'expense',
        Expense.date >= datetime.combine(start_date, datetime.min.time()),
        Expense.date < datetime.combine(end_date + timedelta(days=1), datetime.min.time()),
    )
    rows = [{'category': e.category, 'cents': int(e.amount.scaleb(2))} for e in q]
    if not rows:
        return {'labels': [], 'values': [], 'total': Decimal('0.00'),
                'start': start_date.isoformat(), 'end': end_date.isoformat()}

    df = pd.DataFrame(rows)
    summary = df.groupby('category')['cents'].sum().sort_values(ascending=False)
    labels = summary.index.tolist()
    values = [Decimal(int(v)).scaleb(-2) for v in summary.values.tolist()]
    total = Decimal(int(df['cents'].sum())).scaleb(-2)
    return {'labels': labels, 'values': values, 'total': total,
            'start': start_date.isoformat(), 'end': end_date.isoformat()}
