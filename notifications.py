"""Notification store, preference rows and the producers that feed them.

Producers called as a side effect of another write (budget saved, expense
recorded, ...) never fail the primary operation: storage errors are
rolled back and logged. The store operations themselves raise.
"""
import functools
import logging
import math
from datetime import timedelta
from decimal import Decimal

import pandas as pd
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from errors import InvalidInput
from models import (Budget, BillReminder, Expense, Notification, NotificationPreference,
                    SavingGoal, NOTIFICATION_PRIORITIES, SUMMARY_FREQUENCIES, utcnow)

log = logging.getLogger(__name__)

MILESTONES = (25, 50, 75, 100)
DEDUPE_WINDOW = timedelta(hours=24)
BILL_LOOKAHEAD = timedelta(days=7)
ANOMALY_WINDOW = timedelta(days=30)
ANOMALY_MIN_ENTRIES = 10


# ==============================
# STORE
# ==============================
def create(session, user_id, kind, title, message, data=None, priority='normal', commit=True):
    if not kind or not title or not message:
        raise InvalidInput('Missing required fields: type, title, message')
    priority = priority or 'normal'
    if priority not in NOTIFICATION_PRIORITIES:
        raise InvalidInput(f'Priority must be one of: {", ".join(NOTIFICATION_PRIORITIES)}')
    notification = Notification(user_id=user_id, type=kind, title=title, message=message,
                                data=data or None, priority=priority, is_read=False,
                                created_at=utcnow())
    session.add(notification)
    if commit:
        session.commit()
    return notification


def mark_read(session, user_id, notification_ids=None, mark_all=False):
    """Flip the read flag on the caller's notifications and return how many matched.

    Ids that belong to other users are left alone and not counted.
    """
    query = session.query(Notification).filter(Notification.user_id == user_id)
    if mark_all:
        query = query.filter(Notification.is_read.is_(False))
    else:
        if not isinstance(notification_ids, (list, tuple)):
            raise InvalidInput('Invalid notificationIds array')
        try:
            ids = [int(i) for i in notification_ids]
        except (TypeError, ValueError):
            raise InvalidInput('Invalid notificationIds array')
        if not ids:
            return 0
        query = query.filter(Notification.id.in_(ids))
    count = query.update({Notification.is_read: True}, synchronize_session=False)
    session.commit()
    log.debug('User %s marked %d notifications as read', user_id, count)
    return count


def list_notifications(session, user_id, limit=50, offset=0, unread_only=False):
    if limit < 1 or offset < 0:
        raise InvalidInput('limit must be positive and offset non-negative')
    query = session.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    total = query.count()
    items = (query.order_by(Notification.created_at.desc(), Notification.id.desc())
             .offset(offset).limit(limit).all())
    return items, total


def unread_count(session, user_id):
    return (session.query(func.count(Notification.id))
            .filter(Notification.user_id == user_id, Notification.is_read.is_(False))
            .scalar())


def get_or_create_preferences(session, user_id):
    prefs = session.query(NotificationPreference).filter_by(user_id=user_id).first()
    if prefs is None:
        prefs = NotificationPreference(user_id=user_id)
        session.add(prefs)
        session.commit()
        log.info('Created default notification preferences for user %s', user_id)
    return prefs


def update_preferences(session, user_id, fields):
    prefs = get_or_create_preferences(session, user_id)
    for key, column in NotificationPreference.FIELDS.items():
        if key not in fields or fields[key] is None:
            continue
        value = fields[key]
        if column == 'summary_frequency':
            if value not in SUMMARY_FREQUENCIES:
                raise InvalidInput(f'summaryFrequency must be one of: {", ".join(SUMMARY_FREQUENCIES)}')
        elif not isinstance(value, bool):
            raise InvalidInput(f'{key} must be true or false')
        setattr(prefs, column, value)
    session.commit()
    return prefs


# ==============================
# PRODUCERS
# ==============================
def side_effect(fn):
    """Run a producer without letting storage errors escape."""
    @functools.wraps(fn)
    def wrapper(session, *args, **kwargs):
        try:
            return fn(session, *args, **kwargs)
        except SQLAlchemyError:
            session.rollback()
            log.exception('Error creating notification in %s', fn.__name__)
            return None
    return wrapper


@side_effect
def notify_budget_updated(session, user_id, budget, is_new):
    action = 'created' if is_new else 'updated'
    return create(
        session, user_id, 'budget_alert',
        'Budget Created' if is_new else 'Budget Updated',
        f'Your {budget.period} budget for {budget.category} has been {action} to ${budget.amount}.',
        data={
            'category': budget.category,
            'budgetAmount': str(budget.amount),
            'period': budget.period,
            'action': action,
        },
        priority='low',
    )


@side_effect
def notify_expense_added(session, user_id, expense, budget_status=None):
    message = f'Added expense of ${expense.amount} for {expense.category}.'
    priority = 'low'
    percentage = None
    if budget_status is not None:
        spent, limit = budget_status
        percentage = spent / limit * 100
        if percentage >= 90:
            message += f" You're now at {percentage:.0f}% of your {expense.category} budget!"
            priority = 'high'
        elif percentage >= 75:
            message += f" You've used {percentage:.0f}% of your {expense.category} budget."
            priority = 'normal'
    return create(
        session, user_id, 'budget_alert', 'Expense Recorded', message,
        data={
            'expenseId': expense.id,
            'amount': str(expense.amount),
            'category': expense.category,
            'budgetPercentage': f'{percentage:.1f}' if percentage is not None else None,
            'action': 'expense_added',
        },
        priority=priority,
    )


@side_effect
def notify_bill_reminder_created(session, user_id, bill):
    days = ', '.join(str(d) for d in bill.reminder_days)
    amount_text = f' for ${bill.amount}' if bill.amount else ''
    return create(
        session, user_id, 'bill_reminder', 'Bill Reminder Created',
        f'Successfully set up reminder for "{bill.name}"{amount_text}. '
        f"You'll be notified {days} days before the due date.",
        data={
            'billId': bill.id,
            'billName': bill.name,
            'amount': str(bill.amount) if bill.amount is not None else None,
            'dueDate': bill.due_date.isoformat(),
            'frequency': bill.frequency,
            'action': 'created',
        },
    )


@side_effect
def notify_bill_reminder_updated(session, user_id, bill):
    amount_text = f' (${bill.amount})' if bill.amount else ''
    return create(
        session, user_id, 'bill_reminder', 'Bill Reminder Updated',
        f'"{bill.name}"{amount_text} has been updated successfully.',
        data={
            'billId': bill.id,
            'billName': bill.name,
            'amount': str(bill.amount) if bill.amount is not None else None,
            'action': 'updated',
        },
        priority='low',
    )


@side_effect
def notify_goal_created(session, user_id, goal):
    return create(
        session, user_id, 'goal_milestone', 'Savings Goal Created',
        f'Your goal "{goal.name}" has been created with a target of ${goal.target}. '
        f"You're currently at {goal.progress:.1f}% of your goal!",
        data={
            'goalId': goal.id,
            'goalName': goal.name,
            'targetAmount': str(goal.target),
            'currentAmount': str(goal.saved),
            'action': 'created',
        },
    )


# ==============================
# PERIODIC CHECKS
# ==============================
def _recent(session, user_id, kind, since=None):
    query = session.query(Notification).filter(Notification.user_id == user_id, Notification.type == kind)
    if since is not None:
        query = query.filter(Notification.created_at >= since)
    return query.all()


def _already_sent(notifications, **match):
    for n in notifications:
        data = n.data or {}
        if all(data.get(k) == v for k, v in match.items()):
            return True
    return False


def category_spending(session, user_id, category, since, until):
    total = (session.query(func.sum(Expense.amount))
             .filter(Expense.user_id == user_id, Expense.category == category,
                     Expense.type == 'expense', Expense.date >= since, Expense.date <= until)
             .scalar())
    return total if total is not None else Decimal('0.00')


def check_budget_alerts(session, user_id, now=None):
    now = now or utcnow()
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    recent = _recent(session, user_id, 'budget_alert', since=now - DEDUPE_WINDOW)
    created = []
    for budget in session.query(Budget).filter_by(user_id=user_id).all():
        spent = category_spending(session, user_id, budget.category, month_start, now)
        percentage = spent / budget.amount * 100
        if percentage >= 100:
            priority = 'critical'
            message = f"You've exceeded your {budget.category} budget by ${spent - budget.amount}!"
        elif percentage >= 90:
            priority = 'critical'
            message = (f"You're at {percentage:.0f}% of your {budget.category} budget. "
                       f"Only ${budget.amount - spent} remaining!")
        elif percentage >= 75:
            priority = 'high'
            message = (f"You've used {percentage:.0f}% of your {budget.category} budget. "
                       f"${budget.amount - spent} remaining.")
        else:
            continue
        if _already_sent(recent, category=budget.category, action='threshold'):
            continue
        alert = create(
            session, user_id, 'budget_alert', f'{budget.category} Budget Alert', message,
            data={
                'category': budget.category,
                'budgetAmount': str(budget.amount),
                'currentSpending': str(spent),
                'percentage': f'{percentage:.1f}',
                'action': 'threshold',
            },
            priority=priority, commit=False,
        )
        recent.append(alert)
        created.append(alert)
    session.commit()
    return created


def check_goal_milestones(session, user_id):
    sent = _recent(session, user_id, 'goal_milestone')
    created = []
    for goal in session.query(SavingGoal).filter_by(user_id=user_id).all():
        for milestone in MILESTONES:
            if goal.progress < milestone or _already_sent(sent, goalId=goal.id, milestone=milestone):
                continue
            if milestone == 100:
                message = f'Congratulations! You\'ve reached your "{goal.name}" goal of ${goal.target}!'
            else:
                message = f'Great progress! You\'ve reached {milestone}% of your "{goal.name}" goal!'
            created.append(create(
                session, user_id, 'goal_milestone', 'Goal Milestone Reached!', message,
                data={
                    'goalId': goal.id,
                    'goalName': goal.name,
                    'milestone': milestone,
                    'currentAmount': str(goal.saved),
                    'targetAmount': str(goal.target),
                },
                priority='high' if milestone == 100 else 'normal', commit=False,
            ))
    session.commit()
    return created


def check_bill_reminders(session, user_id=None, now=None):
    """Remind about unpaid bills due within a week on one of their reminder days."""
    now = now or utcnow()
    query = session.query(BillReminder).filter(BillReminder.is_paid.is_(False),
                                               BillReminder.due_date >= now,
                                               BillReminder.due_date <= now + BILL_LOOKAHEAD)
    if user_id is not None:
        query = query.filter(BillReminder.user_id == user_id)
    created = []
    for bill in query.all():
        days_until_due = math.ceil((bill.due_date - now).total_seconds() / 86400)
        if days_until_due not in (bill.reminder_days or []):
            continue
        recent = _recent(session, bill.user_id, 'bill_reminder', since=now - DEDUPE_WINDOW)
        if _already_sent(recent, billId=bill.id, action='due'):
            continue
        amount_text = f' (${bill.amount})' if bill.amount else ''
        if days_until_due == 0:
            message = f'"{bill.name}" is due today{amount_text}!'
        else:
            plural = 's' if days_until_due > 1 else ''
            message = f'"{bill.name}" is due in {days_until_due} day{plural}{amount_text}.'
        created.append(create(
            session, bill.user_id, 'bill_reminder', 'Bill Reminder', message,
            data={
                'billId': bill.id,
                'billName': bill.name,
                'amount': str(bill.amount) if bill.amount is not None else None,
                'dueDate': bill.due_date.isoformat(),
                'daysUntilDue': days_until_due,
                'action': 'due',
            },
            priority='high' if days_until_due <= 1 else 'normal', commit=False,
        ))
    session.commit()
    return created


def detect_spending_anomalies(session, user_id, now=None):
    """Flag today's expenses more than two standard deviations above the 30 day mean."""
    now = now or utcnow()
    rows = [
        {'id': e.id, 'amount': float(e.amount), 'category': e.category, 'date': e.date}
        for e in session.query(Expense).filter(Expense.user_id == user_id, Expense.type == 'expense',
                                               Expense.date >= now - ANOMALY_WINDOW)
    ]
    if len(rows) < ANOMALY_MIN_ENTRIES:
        return []

    df = pd.DataFrame(rows)
    mean = df['amount'].mean()
    threshold = mean + 2 * df['amount'].std(ddof=0)
    today = df[(df['date'].dt.date == now.date()) & (df['amount'] > threshold)]

    sent = _recent(session, user_id, 'anomaly')
    created = []
    for row in today.itertuples():
        expense_id = int(row.id)
        if _already_sent(sent, expenseId=expense_id):
            continue
        above = (row.amount - mean) / mean * 100
        created.append(create(
            session, user_id, 'anomaly', 'Unusual Spending Detected',
            f'Large expense detected: ${row.amount:.2f} for {row.category}. '
            f'This is {above:.0f}% above your average spending.',
            data={
                'expenseId': expense_id,
                'amount': f'{row.amount:.2f}',
                'category': row.category,
                'averageSpending': f'{mean:.2f}',
                'percentageAboveAverage': f'{above:.0f}',
            },
            priority='high', commit=False,
        ))
    session.commit()
    return created


CHECKS = ('budget_alerts', 'goal_milestones', 'spending_anomalies', 'bill_reminders', 'all_user_checks')


def run_checks(session, user_id, kind):
    """Run one named check (or all of them) for a user, honouring their preferences."""
    if kind not in CHECKS:
        raise InvalidInput('Invalid trigger type')
    prefs = get_or_create_preferences(session, user_id)
    run_all = kind == 'all_user_checks'
    created = []
    if (run_all or kind == 'budget_alerts') and prefs.budget_alerts:
        created += check_budget_alerts(session, user_id)
    if (run_all or kind == 'goal_milestones') and prefs.goal_milestones:
        created += check_goal_milestones(session, user_id)
    if (run_all or kind == 'spending_anomalies') and prefs.anomaly_alerts:
        created += detect_spending_anomalies(session, user_id)
    if (run_all or kind == 'bill_reminders') and prefs.bill_reminders:
        created += check_bill_reminders(session, user_id=user_id)
    log.info('Ran %s for user %s: %d notifications', kind, user_id, len(created))
    return created
