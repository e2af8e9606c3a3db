import logging

from sqlalchemy.exc import IntegrityError

import notifications
from errors import InvalidInput, NotFound
from models import Budget, BUDGET_PERIODS, parse_money

log = logging.getLogger(__name__)


def _validate(category, amount, period):
    if not isinstance(category, str) or not category.strip():
        raise InvalidInput('Invalid category or amount')
    category = category.strip()
    try:
        amount = parse_money(amount)
    except InvalidInput:
        raise InvalidInput('Invalid category or amount')
    period = period or 'monthly'
    if period not in BUDGET_PERIODS:
        raise InvalidInput(f'Period must be one of: {", ".join(BUDGET_PERIODS)}')
    return category, amount, period


def _find(session, user_id, category, period):
    return session.query(Budget).filter_by(user_id=user_id, category=category, period=period).first()


def list_budgets(session, user_id):
    return session.query(Budget).filter_by(user_id=user_id).order_by(Budget.category.asc()).all()


def upsert_budget(session, user_id, category, amount, period=None):
    """Create or update the budget for (user, category, period).

    Whether the budget is new is decided by the lookup before the write.
    The insert runs in a savepoint; if a concurrent request created the
    same key first, the unique constraint rejects it and the surviving
    row is updated instead.

    Returns ``(budget, created)``.
    """
    category, amount, period = _validate(category, amount, period)

    budget = _find(session, user_id, category, period)
    created = budget is None
    if created:
        try:
            with session.begin_nested():
                budget = Budget(user_id=user_id, category=category, amount=amount, period=period)
                session.add(budget)
        except IntegrityError:
            log.info('Budget %s/%s for user %s created concurrently, updating instead',
                     category, period, user_id)
            budget = _find(session, user_id, category, period)
            budget.amount = amount
    else:
        budget.amount = amount
    session.commit()

    notifications.notify_budget_updated(session, user_id, budget, created)
    return budget, created


def update_budget(session, budget_id, user_id, category, amount, period=None):
    category, amount, period = _validate(category, amount, period)
    budget = session.query(Budget).filter_by(id=budget_id, user_id=user_id).first()
    if budget is None:
        raise NotFound('Budget not found')
    clash = _find(session, user_id, category, period)
    if clash is not None and clash.id != budget.id:
        raise InvalidInput(f'A {period} budget for {category} already exists')

    budget.category = category
    budget.amount = amount
    budget.period = period
    session.commit()

    notifications.notify_budget_updated(session, user_id, budget, False)
    return budget


def delete_budget(session, budget_id, user_id):
    budget = session.query(Budget).filter_by(id=budget_id, user_id=user_id).first()
    if budget is None:
        raise NotFound('Budget not found')
    session.delete(budget)
    session.commit()
