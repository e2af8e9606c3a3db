"""Budgeting rules applied to the user's current financial period.

Three rules are supported: 50/30/20 (needs, wants and savings shares of
income), pay yourself first (a fixed savings share taken off the top) and
smart goals (the monthly pace each saving goal needs). Ledger entries are
bucketed by keywords in their category name and aggregated with pandas.

The period itself (weekly, monthly, ... or a custom number of days) is a
per-user setting. Closing a period stores its totals as a ``RulePeriod``
row so past periods can be reviewed.
"""
import logging
import math
from datetime import datetime, time, timedelta
from decimal import Decimal, ROUND_HALF_UP

import pandas as pd

import notifications
from errors import InvalidInput, NotFound
from models import (CENT, CURRENCIES, FINANCE_RULES, RULE_PERIODS, Expense, RulePeriod, SavingGoal,
                    User, iso, utcnow)

log = logging.getLogger(__name__)

NEEDS_CATEGORIES = ('groceries', 'rent', 'transport', 'utilities', 'insurance', 'healthcare', 'bills')
WANTS_CATEGORIES = ('shopping', 'entertainment', 'dining', 'hobbies', 'travel', 'subscriptions')
SAVINGS_CATEGORIES = ('savings', 'investment', 'retirement', 'emergency fund')

SPLIT = {'needs': 50, 'wants': 30, 'savings': 20}
# A goal is affordable when its monthly saving is at most this share of income
AFFORDABLE_SHARE = 30
HISTORY_LIMIT = 10
ZERO = Decimal('0.00')


def classify(category):
    lowered = category.lower()
    for bucket, keywords in (('needs', NEEDS_CATEGORIES),
                             ('wants', WANTS_CATEGORIES),
                             ('savings', SAVINGS_CATEGORIES)):
        if any(k in lowered for k in keywords):
            return bucket
    return 'wants'


def is_savings(category):
    lowered = category.lower()
    return any(k in lowered for k in SAVINGS_CATEGORIES)


def _money(cents):
    return Decimal(int(cents)).scaleb(-2)


def _share(amount, percent):
    return (amount * percent / 100).quantize(CENT, rounding=ROUND_HALF_UP)


def _pct(part, whole):
    return float(round(part / whole * 100, 1)) if whole > 0 else 0.0


def _user(session, user_id):
    user = session.get(User, user_id)
    if user is None:
        raise NotFound('User not found')
    return user


# ==============================
# PERIODS
# ==============================
def _add_months(moment, months):
    return (pd.Timestamp(moment) + pd.DateOffset(months=months)).to_pydatetime()


def period_bounds(period_type, anchor, custom_days=None):
    """Return ``(start, end, label)`` for the period containing ``anchor``.

    ``end`` is the last microsecond of the period. Weeks start on Monday;
    custom periods start on the anchor day itself.
    """
    day = datetime.combine(anchor.date(), time.min)
    if period_type == 'weekly':
        start = day - timedelta(days=day.weekday())
        following = start + timedelta(weeks=1)
        label = f'Week of {start:%Y-%m-%d}'
    elif period_type == 'monthly':
        start = day.replace(day=1)
        following = _add_months(start, 1)
        label = f'{start:%B %Y}'
    elif period_type == 'quarterly':
        start = day.replace(month=(day.month - 1) // 3 * 3 + 1, day=1)
        following = _add_months(start, 3)
        label = f'Q{(start.month - 1) // 3 + 1} {start.year}'
    elif period_type == 'semi-annual':
        start = day.replace(month=1 if day.month <= 6 else 7, day=1)
        following = _add_months(start, 6)
        label = f'{"H1" if start.month == 1 else "H2"} {start.year}'
    elif period_type == 'annual':
        start = day.replace(month=1, day=1)
        following = _add_months(start, 12)
        label = f'Year {start.year}'
    elif period_type == 'custom':
        if not custom_days or custom_days <= 0:
            raise InvalidInput('Custom period requires a positive customPeriodDays')
        start = day
        following = start + timedelta(days=custom_days)
        label = f'Custom {custom_days} days ({start:%Y-%m-%d} - {following - timedelta(days=1):%Y-%m-%d})'
    else:
        raise InvalidInput(f'Invalid period type: {period_type}')
    return start, following - timedelta(microseconds=1), label


def current_period(user, now=None):
    now = now or utcnow()
    start, end, label = period_bounds(user.rule_period, user.period_start_date, user.custom_period_days)
    return {
        'periodType': user.rule_period,
        'label': label,
        'start': iso(start),
        'end': iso(end),
        'isComplete': now > end,
        'daysRemaining': max(0, math.ceil((end - now).total_seconds() / 86400)),
    }


# ==============================
# AGGREGATION
# ==============================
def ledger_frame(session, user_id, start, end):
    """Ledger entries dated within ``[start, end]`` as a frame of cents with their rule bucket."""
    rows = [
        {'type': e.type, 'category': e.category, 'cents': int(e.amount.scaleb(2))}
        for e in session.query(Expense).filter(Expense.user_id == user_id,
                                               Expense.date >= start, Expense.date <= end)
    ]
    df = pd.DataFrame(rows, columns=['type', 'category', 'cents'])
    df['cents'] = df['cents'].astype('int64')
    df['bucket'] = df['category'].map(classify)
    df['savings'] = df['category'].map(is_savings).astype(bool)
    return df


def _income(df):
    return _money(df.loc[df['type'] == 'income', 'cents'].sum())


def period_totals(df):
    income = _income(df)
    expenses = df[df['type'] == 'expense']
    spent = _money(expenses['cents'].sum())
    saved = _money(expenses.loc[expenses['savings'], 'cents'].sum())
    return {
        'totalIncome': income,
        'totalExpenses': spent,
        'totalSavings': saved,
        'budgetAdherence': _pct(income - spent, income),
        'savingsRate': _pct(saved, income),
    }


def expense_breakdown(df):
    per_category = (df[df['type'] == 'expense'].groupby('category')['cents'].sum()
                    .sort_values(ascending=False))
    return {category: _money(cents) for category, cents in per_category.items()}


def fifty_thirty_twenty(df):
    income = _income(df)
    spent_by_bucket = df[df['type'] == 'expense'].groupby('bucket')['cents'].sum()

    result = {'allocations': {}, 'spending': {}, 'remaining': {}, 'percentages': {}, 'isOverBudget': {}}
    for bucket, share in SPLIT.items():
        allocation = _share(income, share)
        spent = _money(spent_by_bucket.get(bucket, 0))
        result['allocations'][bucket] = allocation
        result['spending'][bucket] = spent
        result['remaining'][bucket] = max(ZERO, allocation - spent)
        result['percentages'][bucket] = _pct(spent, allocation)
        # saving more than planned is never over budget
        result['isOverBudget'][bucket] = bucket != 'savings' and spent > allocation
    result['totalBudget'] = income
    result['totalSpent'] = sum(result['spending'].values(), ZERO)
    return result


def pay_yourself_first(df, percentage):
    income = _income(df)
    target = _share(income, percentage)
    available = income - target
    expenses = df[df['type'] == 'expense']
    spending = _money(expenses.loc[~expenses['savings'], 'cents'].sum())
    saved = _money(expenses.loc[expenses['savings'], 'cents'].sum())
    return {
        'income': income,
        'savingsPercentage': percentage,
        'savingsTarget': target,
        'actualSavings': saved,
        'savingsProgress': _pct(saved, target),
        'availableForExpenses': available,
        'totalExpenses': spending,
        'remainingBudget': available - spending,
        'isOnTrack': saved >= target,
        'savingsGap': max(ZERO, target - saved),
        'expensesOverBudget': spending > available,
    }


def smart_goal(goal, income, now=None):
    """Monthly saving needed to meet ``goal`` by its deadline, against the pace so far."""
    now = now or utcnow()
    months_left = max(0, (goal.deadline.year - now.year) * 12 + goal.deadline.month - now.month)
    remaining = max(ZERO, goal.target - goal.saved)
    required = (remaining / months_left).quantize(CENT, rounding=ROUND_HALF_UP) if months_left else remaining
    days_active = max(1, (now - goal.created_at).days)
    pace = (goal.saved / days_active * 30).quantize(CENT, rounding=ROUND_HALF_UP)
    months_to_goal = math.ceil(remaining / pace) if pace > 0 else 0
    on_track = pace >= required

    if goal.saved >= goal.target:
        forecast = 'Goal achieved!'
    elif months_left == 0:
        forecast = 'Deadline has passed'
    elif pace == 0:
        forecast = f'You need to save ${required}/month to reach your goal'
    elif on_track:
        forecast = f"On track! At this pace, you'll reach your goal in {months_to_goal} months"
    else:
        forecast = f'You need to save an additional ${required - pace}/month to meet your deadline'

    share_of_income = _pct(required, income)
    return {
        'goalId': goal.id,
        'goalName': goal.name,
        'target': goal.target,
        'saved': goal.saved,
        'remaining': remaining,
        'progressPercentage': _pct(goal.saved, goal.target),
        'deadline': iso(goal.deadline),
        'monthsRemaining': months_left,
        'requiredMonthlySaving': required,
        'currentMonthlyPace': pace,
        'monthsToGoal': months_to_goal,
        'isOnTrack': on_track,
        'forecastMessage': forecast,
        'savingsAsPercentOfIncome': share_of_income,
        'isAffordable': share_of_income <= AFFORDABLE_SHARE,
        'daysUntilDeadline': max(0, (goal.deadline - now).days),
    }


def rule_analysis(session, user_id, now=None):
    """Apply the user's selected rule to the ledger of their current period."""
    now = now or utcnow()
    user = _user(session, user_id)
    start, end, _ = period_bounds(user.rule_period, user.period_start_date, user.custom_period_days)
    df = ledger_frame(session, user_id, start, end)

    if user.selected_rule == 'pay-yourself-first':
        analysis = pay_yourself_first(df, user.savings_percentage)
    elif user.selected_rule == 'smart-goal':
        income = _income(df)
        goals = session.query(SavingGoal).filter_by(user_id=user_id).order_by(SavingGoal.deadline.asc())
        analysis = [smart_goal(goal, income, now) for goal in goals]
    else:
        analysis = fifty_thirty_twenty(df)

    return {
        'selectedRule': user.selected_rule,
        'period': current_period(user, now),
        'totals': period_totals(df),
        'expenseBreakdown': expense_breakdown(df),
        'analysis': analysis,
    }


# ==============================
# PROFILE
# ==============================
def get_profile(session, user_id):
    return _user(session, user_id)


def update_profile(session, user_id, fields):
    user = _user(session, user_id)
    rule = fields.get('selectedRule')
    if rule is not None and rule not in FINANCE_RULES:
        raise InvalidInput('Invalid financial rule selected')
    percentage = fields.get('savingsPercentage')
    if percentage is not None:
        if (isinstance(percentage, bool) or not isinstance(percentage, (int, float))
                or not 1 <= percentage <= 50 or percentage != int(percentage)):
            raise InvalidInput('Savings percentage must be between 1 and 50')
    currency = fields.get('currency')
    if currency is not None and currency not in CURRENCIES:
        raise InvalidInput('Invalid currency selected')

    if 'name' in fields:
        user.name = (fields['name'] or '').strip() or None
    if rule is not None:
        user.selected_rule = rule
    if percentage is not None:
        user.savings_percentage = int(percentage)
    if currency is not None:
        user.currency = currency
    session.commit()
    return user


# ==============================
# PERIOD SETTINGS
# ==============================
def get_rule_period(session, user_id, now=None):
    user = _user(session, user_id)
    history = (session.query(RulePeriod).filter_by(user_id=user_id)
               .order_by(RulePeriod.start_date.desc(), RulePeriod.id.desc())
               .limit(HISTORY_LIMIT).all())
    return {
        'currentSettings': user.period_settings(),
        'currentPeriod': current_period(user, now),
        'historicalPeriods': [p.to_dict() for p in history],
    }


def _close_period(session, user):
    """Store the totals of the user's current period; the caller commits."""
    start, end, _ = period_bounds(user.rule_period, user.period_start_date, user.custom_period_days)
    df = ledger_frame(session, user.id, start, end)
    totals = period_totals(df)
    record = RulePeriod(
        user_id=user.id,
        period_type=user.rule_period,
        start_date=start,
        end_date=end,
        total_income=totals['totalIncome'],
        total_expenses=totals['totalExpenses'],
        total_savings=totals['totalSavings'],
        budget_adherence=totals['budgetAdherence'],
        savings_rate=totals['savingsRate'],
        rule_data={
            'selectedRule': user.selected_rule,
            'savingsPercentage': user.savings_percentage,
            'expenseBreakdown': {k: str(v) for k, v in expense_breakdown(df).items()},
        },
    )
    session.add(record)
    return record


def update_rule_period(session, user_id, fields, now=None):
    """Change the period settings.

    Switching to another period type, or ``forceReset``, closes the
    current period and starts the new one now.
    """
    now = now or utcnow()
    user = _user(session, user_id)
    period = fields.get('rulePeriod')
    if period is not None and period not in RULE_PERIODS:
        raise InvalidInput(f'rulePeriod must be one of: {", ".join(RULE_PERIODS)}')
    days = fields.get('customPeriodDays')
    if days is not None and (isinstance(days, bool) or not isinstance(days, int) or days <= 0):
        raise InvalidInput('customPeriodDays must be a positive whole number')
    auto_reset = fields.get('autoResetEnabled')
    if auto_reset is not None and not isinstance(auto_reset, bool):
        raise InvalidInput('autoResetEnabled must be true or false')
    new_period = period or user.rule_period
    new_days = days or user.custom_period_days
    if new_period == 'custom' and not new_days:
        raise InvalidInput('Custom period requires a positive customPeriodDays')

    if fields.get('forceReset') or new_period != user.rule_period:
        _close_period(session, user)
        user.period_start_date = now
    user.rule_period = new_period
    user.custom_period_days = new_days
    if auto_reset is not None:
        user.auto_reset_enabled = auto_reset
    session.commit()
    log.info('User %s now budgets by %s period starting %s', user_id, new_period, user.period_start_date)
    return user


def reset_period(session, user_id, now=None):
    """Close the current period once it has ended and start the next one.

    Returns the stored ``RulePeriod``, or ``None`` while the current period
    is still running.
    """
    now = now or utcnow()
    user = _user(session, user_id)
    _, end, _ = period_bounds(user.rule_period, user.period_start_date, user.custom_period_days)
    if now <= end:
        return None

    record = _close_period(session, user)
    user.period_start_date = end + timedelta(microseconds=1)
    notifications.create(
        session, user_id, 'period_reset', 'Financial Period Reset',
        f'Your {user.rule_period} financial period has been reset. Previous period saved for review.',
        data={
            'previousPeriod': {
                'start': iso(record.start_date),
                'end': iso(record.end_date),
                'totalIncome': str(record.total_income),
                'totalExpenses': str(record.total_expenses),
                'totalSavings': str(record.total_savings),
                'savingsRate': record.savings_rate,
            },
        },
        commit=False,
    )
    session.commit()
    log.info('Closed %s period ending %s for user %s', user.rule_period, end, user_id)
    return record
