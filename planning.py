"""Bill reminders and saving goals."""
from decimal import Decimal

import notifications
from errors import InvalidInput, NotFound
from models import BillReminder, SavingGoal, parse_datetime, parse_money, utcnow

DEFAULT_REMINDER_DAYS = [7, 3, 1]


# ==============================
# BILL REMINDERS
# ==============================
def list_bill_reminders(session, user_id):
    return session.query(BillReminder).filter_by(user_id=user_id).order_by(BillReminder.due_date.asc()).all()


def _bill_fields(fields):
    if not fields.get('name') or not fields.get('dueDate') or not fields.get('frequency'):
        raise InvalidInput('Missing required fields: name, dueDate, frequency')
    reminder_days = fields.get('reminderDays') or list(DEFAULT_REMINDER_DAYS)
    if not isinstance(reminder_days, list) or not all(
            isinstance(d, int) and not isinstance(d, bool) and d >= 0 for d in reminder_days):
        raise InvalidInput('reminderDays must be a list of non-negative whole days')
    amount = fields.get('amount')
    return {
        'name': fields['name'],
        'amount': parse_money(amount) if amount not in (None, '', 0) else None,
        'due_date': parse_datetime(fields['dueDate'], 'dueDate'),
        'frequency': fields['frequency'],
        'reminder_days': reminder_days,
    }


def get_bill_reminder(session, bill_id, user_id):
    bill = session.query(BillReminder).filter_by(id=bill_id, user_id=user_id).first()
    if bill is None:
        raise NotFound('Bill reminder not found')
    return bill


def create_bill_reminder(session, user_id, fields):
    bill = BillReminder(user_id=user_id, is_paid=False, **_bill_fields(fields))
    session.add(bill)
    session.commit()
    notifications.notify_bill_reminder_created(session, user_id, bill)
    return bill


def update_bill_reminder(session, bill_id, user_id, fields):
    """Replace a reminder's schedule; omitted amount and reminder days reset to their defaults."""
    bill = get_bill_reminder(session, bill_id, user_id)
    for key, value in _bill_fields(fields).items():
        setattr(bill, key, value)
    session.commit()
    notifications.notify_bill_reminder_updated(session, user_id, bill)
    return bill


def delete_bill_reminder(session, bill_id, user_id):
    bill = get_bill_reminder(session, bill_id, user_id)
    session.delete(bill)
    session.commit()


def mark_bill_paid(session, bill_id, user_id):
    bill = get_bill_reminder(session, bill_id, user_id)
    bill.is_paid = True
    session.commit()
    return bill


# ==============================
# SAVING GOALS
# ==============================
def list_saving_goals(session, user_id):
    return session.query(SavingGoal).filter_by(user_id=user_id).order_by(SavingGoal.deadline.asc()).all()


def _goal_amounts(target, saved):
    target = parse_money(target, 'target')
    saved = parse_money(saved, 'saved amount', allow_zero=True) if saved is not None else Decimal('0.00')
    if saved > target:
        raise InvalidInput('Saved amount cannot exceed target')
    return target, saved


def _future_deadline(value):
    deadline = parse_datetime(value, 'deadline')
    if deadline < utcnow():
        raise InvalidInput('Deadline must be in the future')
    return deadline


def create_saving_goal(session, user_id, fields):
    if not fields.get('name') or fields.get('target') is None or fields.get('deadline') is None:
        raise InvalidInput('Missing required fields (name, target, deadline)')
    target, saved = _goal_amounts(fields['target'], fields.get('saved'))

    goal = SavingGoal(
        user_id=user_id,
        name=fields['name'],
        target=target,
        saved=saved,
        deadline=_future_deadline(fields['deadline']),
    )
    session.add(goal)
    session.commit()
    notifications.notify_goal_created(session, user_id, goal)
    return goal


def get_saving_goal(session, goal_id, user_id):
    goal = session.query(SavingGoal).filter_by(id=goal_id, user_id=user_id).first()
    if goal is None:
        raise NotFound('Saving goal not found')
    return goal


def update_saving_goal(session, goal_id, user_id, fields):
    goal = get_saving_goal(session, goal_id, user_id)
    target, saved = _goal_amounts(
        fields['target'] if fields.get('target') is not None else goal.target,
        fields['saved'] if fields.get('saved') is not None else goal.saved,
    )
    if fields.get('name'):
        goal.name = fields['name']
    if fields.get('deadline'):
        goal.deadline = _future_deadline(fields['deadline'])
    goal.target = target
    goal.saved = saved
    session.commit()
    return goal


def delete_saving_goal(session, goal_id, user_id):
    goal = get_saving_goal(session, goal_id, user_id)
    session.delete(goal)
    session.commit()
