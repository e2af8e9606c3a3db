import logging
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from flask import current_app
from flask_login import LoginManager, UserMixin
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.exc import OperationalError
from sqlalchemy.types import Integer, TypeDecorator
from werkzeug.security import generate_password_hash, check_password_hash

from errors import InvalidInput

log = logging.getLogger(__name__)

db = SQLAlchemy()
login_manager = LoginManager()

CENT = Decimal('0.01')
# Largest amount the cents column holds with room for sums
MAX_MONEY = Decimal('999999999999.99')

BUDGET_PERIODS = ('weekly', 'monthly', 'yearly')
NOTIFICATION_PRIORITIES = ('low', 'normal', 'high', 'critical')
PAYABLE_PRIORITIES = ('High', 'Medium', 'Low')
SUMMARY_FREQUENCIES = ('disabled', 'daily', 'weekly', 'monthly')
EXPENSE_TYPES = ('income', 'expense')
FINANCE_RULES = ('50-30-20', 'pay-yourself-first', 'smart-goal')
RULE_PERIODS = ('weekly', 'monthly', 'quarterly', 'semi-annual', 'annual', 'custom')
CURRENCIES = ('USD', 'EUR', 'GBP', 'JPY', 'CAD', 'AUD', 'CHF', 'CNY', 'INR', 'PKR', 'BDT', 'LKR', 'NPR', 'AED', 'SAR')


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_money(value, field='amount', allow_zero=False):
    """Parse a request value into a two-place Decimal.

    Floats are routed through ``str`` so 0.1 stays 0.1. Booleans, blanks
    and non-finite values are rejected, as are amounts above ``MAX_MONEY``
    and values that are not strictly positive (or negative, with
    ``allow_zero``).
    """
    if value is None or isinstance(value, bool) or value == '':
        raise InvalidInput(f'{field.capitalize()} is required')
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidInput(f'{field.capitalize()} must be a number')
    if not amount.is_finite():
        raise InvalidInput(f'{field.capitalize()} must be a number')
    if abs(amount) > MAX_MONEY:
        raise InvalidInput(f'{field.capitalize()} is too large')
    try:
        amount = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidInput(f'{field.capitalize()} must be a number')
    if amount < 0 or (amount == 0 and not allow_zero):
        raise InvalidInput(f'{field.capitalize()} must be positive')
    return amount


def parse_datetime(value, field='date'):
    """Parse an ISO date or datetime string into a naive UTC datetime."""
    if not value or not isinstance(value, str):
        raise InvalidInput(f'Invalid {field} format')
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        raise InvalidInput(f'Invalid {field} format')
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def iso(value):
    return value.isoformat() if value is not None else None


class Money(TypeDecorator):
    """Decimal amounts stored as integer cents."""
    impl = Integer
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        amount = Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
        return int(amount.scaleb(2))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(int(value)).scaleb(-2)


def with_retry(operation, attempts=None, delay=None):
    """Run ``operation`` retrying transient connection failures.

    The delay grows by half on every retry; once attempts are exhausted
    the last ``OperationalError`` propagates.
    """
    config = current_app.config
    attempts = attempts if attempts is not None else config['DB_RETRY_ATTEMPTS']
    delay = delay if delay is not None else config['DB_RETRY_DELAY']
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except OperationalError:
            db.session.rollback()
            if attempt >= attempts:
                raise
            log.warning('Database connection failed, retrying in %.2fs (%d attempts left)',
                        delay, attempts - attempt)
            time.sleep(delay)
            delay *= 1.5


# ==============================
# MODELS
# ==============================
class User(db.Model, UserMixin):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    # Profile and budgeting rule settings
    name = db.Column(db.String(120))
    selected_rule = db.Column(db.String(30), nullable=False, default='50-30-20')
    savings_percentage = db.Column(db.Integer, nullable=False, default=20)
    currency = db.Column(db.String(3), nullable=False, default='USD')
    rule_period = db.Column(db.String(20), nullable=False, default='monthly')
    custom_period_days = db.Column(db.Integer)
    period_start_date = db.Column(db.DateTime, nullable=False, default=utcnow)
    auto_reset_enabled = db.Column(db.Boolean, nullable=False, default=True)

    expenses = db.relationship('Expense', backref='user', lazy=True, cascade='all, delete-orphan')
    payables = db.relationship('Payable', backref='user', lazy=True, cascade='all, delete-orphan')
    budgets = db.relationship('Budget', backref='user', lazy=True, cascade='all, delete-orphan')
    notifications = db.relationship('Notification', backref='user', lazy=True, cascade='all, delete-orphan')
    bill_reminders = db.relationship('BillReminder', backref='user', lazy=True, cascade='all, delete-orphan')
    saving_goals = db.relationship('SavingGoal', backref='user', lazy=True, cascade='all, delete-orphan')
    notification_preferences = db.relationship('NotificationPreference', backref='user', uselist=False,
                                               cascade='all, delete-orphan')
    rule_periods = db.relationship('RulePeriod', backref='user', lazy=True, cascade='all, delete-orphan')

    def set_password(self, pw: str):
        self.password_hash = generate_password_hash(pw)

    def check_password(self, pw: str) -> bool:
        return check_password_hash(self.password_hash, pw)

    def profile(self):
        return {
            'id': self.id,
            'username': self.username,
            'name': self.name,
            'selectedRule': self.selected_rule,
            'savingsPercentage': self.savings_percentage,
            'currency': self.currency,
        }

    def period_settings(self):
        return {
            'rulePeriod': self.rule_period,
            'customPeriodDays': self.custom_period_days,
            'periodStartDate': iso(self.period_start_date),
            'autoResetEnabled': self.auto_reset_enabled,
        }


class Expense(db.Model):
    """A ledger entry: money in or out of the user's pocket."""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    amount = db.Column(Money, nullable=False)
    type = db.Column(db.String(10), nullable=False, default='expense')
    category = db.Column(db.String(100), nullable=False)
    date = db.Column(db.DateTime, nullable=False, default=utcnow)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'userId': self.user_id,
            'amount': self.amount,
            'type': self.type,
            'category': self.category,
            'date': iso(self.date),
            'notes': self.notes,
            'createdAt': iso(self.created_at),
        }


class Payable(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    name = db.Column(db.String(150), nullable=False)
    category = db.Column(db.String(100), nullable=False, default='Personal')
    description = db.Column(db.Text)
    notes = db.Column(db.Text)
    priority = db.Column(db.String(10), nullable=False, default='Medium')
    due_date = db.Column(db.DateTime)
    amount = db.Column(Money, nullable=False)
    paid_amount = db.Column(Money, nullable=False, default=Decimal('0.00'))
    is_paid = db.Column(db.Boolean, nullable=False, default=False)
    paid_date = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.CheckConstraint('paid_amount >= 0 AND paid_amount <= amount', name='ck_payable_paid_range'),
    )

    @property
    def remaining(self):
        return self.amount - self.paid_amount

    def to_dict(self):
        return {
            'id': self.id,
            'userId': self.user_id,
            'name': self.name,
            'category': self.category,
            'description': self.description,
            'notes': self.notes,
            'priority': self.priority,
            'dueDate': iso(self.due_date),
            'amount': self.amount,
            'paidAmount': self.paid_amount,
            'isPaid': self.is_paid,
            'paidDate': iso(self.paid_date),
            'createdAt': iso(self.created_at),
            'updatedAt': iso(self.updated_at),
        }


class Budget(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    category = db.Column(db.String(100), nullable=False)
    amount = db.Column(Money, nullable=False)
    period = db.Column(db.String(10), nullable=False, default='monthly')
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.UniqueConstraint('user_id', 'category', 'period', name='uq_budget_user_category_period'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'userId': self.user_id,
            'category': self.category,
            'amount': self.amount,
            'period': self.period,
            'createdAt': iso(self.created_at),
            'updatedAt': iso(self.updated_at),
        }


class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    type = db.Column(db.String(50), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    data = db.Column(db.JSON)
    priority = db.Column(db.String(10), nullable=False, default='normal')
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'userId': self.user_id,
            'type': self.type,
            'title': self.title,
            'message': self.message,
            'data': self.data,
            'priority': self.priority,
            'isRead': self.is_read,
            'createdAt': iso(self.created_at),
        }


class NotificationPreference(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, unique=True)
    email_enabled = db.Column(db.Boolean, nullable=False, default=True)
    push_enabled = db.Column(db.Boolean, nullable=False, default=True)
    sms_enabled = db.Column(db.Boolean, nullable=False, default=True)
    summary_frequency = db.Column(db.String(10), nullable=False, default='weekly')
    budget_alerts = db.Column(db.Boolean, nullable=False, default=True)
    bill_reminders = db.Column(db.Boolean, nullable=False, default=True)
    goal_milestones = db.Column(db.Boolean, nullable=False, default=True)
    anomaly_alerts = db.Column(db.Boolean, nullable=False, default=True)

    # request field -> column
    FIELDS = {
        'emailEnabled': 'email_enabled',
        'pushEnabled': 'push_enabled',
        'smsEnabled': 'sms_enabled',
        'summaryFrequency': 'summary_frequency',
        'budgetAlerts': 'budget_alerts',
        'billReminders': 'bill_reminders',
        'goalMilestones': 'goal_milestones',
        'anomalyAlerts': 'anomaly_alerts',
    }

    def to_dict(self):
        body = {'id': self.id, 'userId': self.user_id}
        for key, column in self.FIELDS.items():
            body[key] = getattr(self, column)
        return body


class BillReminder(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    name = db.Column(db.String(150), nullable=False)
    amount = db.Column(Money)
    due_date = db.Column(db.DateTime, nullable=False)
    frequency = db.Column(db.String(20), nullable=False)
    reminder_days = db.Column(db.JSON, nullable=False, default=lambda: [7, 3, 1])
    is_paid = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'userId': self.user_id,
            'name': self.name,
            'amount': self.amount,
            'dueDate': iso(self.due_date),
            'frequency': self.frequency,
            'reminderDays': self.reminder_days,
            'isPaid': self.is_paid,
            'createdAt': iso(self.created_at),
        }


class SavingGoal(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    name = db.Column(db.String(150), nullable=False)
    target = db.Column(Money, nullable=False)
    saved = db.Column(Money, nullable=False, default=Decimal('0.00'))
    deadline = db.Column(db.DateTime, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    @property
    def progress(self):
        return (self.saved / self.target * 100) if self.target else Decimal(0)

    def to_dict(self):
        return {
            'id': self.id,
            'userId': self.user_id,
            'name': self.name,
            'target': self.target,
            'saved': self.saved,
            'deadline': iso(self.deadline),
            'createdAt': iso(self.created_at),
        }



class RulePeriod(db.Model):
    """A closed budgeting period with its totals, kept for review."""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    period_type = db.Column(db.String(20), nullable=False)
    start_date = db.Column(db.DateTime, nullable=False)
    end_date = db.Column(db.DateTime, nullable=False)
    total_income = db.Column(Money, nullable=False)
    total_expenses = db.Column(Money, nullable=False)
    total_savings = db.Column(Money, nullable=False)
    budget_adherence = db.Column(db.Float, nullable=False)
    savings_rate = db.Column(db.Float, nullable=False)
    rule_data = db.Column(db.JSON)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'periodType': self.period_type,
            'startDate': iso(self.start_date),
            'endDate': iso(self.end_date),
            'totalIncome': self.total_income,
            'totalExpenses': self.total_expenses,
            'totalSavings': self.total_savings,
            'budgetAdherence': self.budget_adherence,
            'savingsRate': self.savings_rate,
            'ruleData': self.rule_data,
            'createdAt': iso(self.created_at),
        }


@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, int(user_id))
