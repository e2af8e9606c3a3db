"""Payables (money the user owes) and the payments applied against them."""
import logging
from decimal import Decimal

from sqlalchemy import case, update
from sqlalchemy.exc import SQLAlchemyError

from errors import AlreadySettled, Conflict, ExceedsRemaining, Internal, InvalidInput, NotFound
from models import Expense, Payable, PAYABLE_PRIORITIES, parse_datetime, parse_money, utcnow

log = logging.getLogger(__name__)

ZERO = Decimal('0.00')


def get_payable(session, payable_id, user_id):
    payable = session.query(Payable).filter_by(id=payable_id, user_id=user_id).first()
    if payable is None:
        raise NotFound('Payable not found')
    return payable


def _reject(session, payable_id, user_id):
    """Explain why the conditional payment update matched no row."""
    payable = get_payable(session, payable_id, user_id)
    if payable.is_paid:
        raise AlreadySettled()
    raise ExceedsRemaining(payable.remaining)


def apply_payment(session, payable_id, user_id, amount):
    """Apply ``amount`` to a payable and record the matching ledger entry.

    The balance check and the increment are a single conditional UPDATE,
    so concurrent payments on the same payable can never overshoot its
    total or both settle it. The ledger entry is written in the same
    transaction and only when the payment was applied.

    Returns ``(payable, payment)`` where ``payment`` has the applied
    amount, the remaining balance and whether the payable is now settled.
    """
    amount = parse_money(amount, 'payment amount')
    now = utcnow()
    try:
        result = session.execute(
            update(Payable)
            .where(Payable.id == payable_id,
                   Payable.user_id == user_id,
                   Payable.is_paid.is_(False),
                   Payable.paid_amount + amount <= Payable.amount)
            .values(paid_amount=Payable.paid_amount + amount, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            _reject(session, payable_id, user_id)

        # settle once fully paid; paid_amount can't exceed amount here
        session.execute(
            update(Payable)
            .where(Payable.id == payable_id, Payable.paid_amount >= Payable.amount)
            .values(is_paid=True, paid_date=now, paid_amount=Payable.amount)
            .execution_options(synchronize_session=False)
        )
        payable = session.get(Payable, payable_id, populate_existing=True)

        notes = f'Payment for: {payable.name}'
        if payable.description:
            notes += f' ({payable.description})'
        session.add(Expense(
            user_id=user_id,
            amount=amount,
            type='expense',
            category=f'Debt Payment - {payable.category}',
            date=now,
            notes=notes,
        ))
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        log.exception('Error recording payment for payable %s', payable_id)
        raise Internal('Failed to record payment')

    log.info('User %s paid %s towards payable %s (settled=%s)', user_id, amount, payable_id, payable.is_paid)
    payment = {
        'amount': amount,
        'remainingAmount': max(ZERO, payable.amount - payable.paid_amount),
        'isFullyPaid': payable.is_paid,
    }
    return payable, payment


def create_payable(session, user_id, fields):
    name = (fields.get('name') or '').strip()
    if not name or fields.get('amount') in (None, ''):
        raise InvalidInput('Name and amount are required')
    amount = parse_money(fields.get('amount'))
    priority = fields.get('priority') or 'Medium'
    if priority not in PAYABLE_PRIORITIES:
        raise InvalidInput(f'Priority must be one of: {", ".join(PAYABLE_PRIORITIES)}')
    due_date = fields.get('dueDate')

    payable = Payable(
        user_id=user_id,
        name=name,
        amount=amount,
        paid_amount=ZERO,
        is_paid=False,
        description=fields.get('description'),
        notes=fields.get('notes'),
        category=fields.get('category') or 'Personal',
        priority=priority,
        due_date=parse_datetime(due_date, 'dueDate') if due_date else None,
    )
    session.add(payable)
    session.commit()
    return payable


def list_payables(session, user_id, status='all'):
    """Return the user's payables (unpaid first) and summary totals."""
    query = session.query(Payable).filter(Payable.user_id == user_id)
    if status == 'pending':
        query = query.filter(Payable.is_paid.is_(False))
    elif status == 'paid':
        query = query.filter(Payable.is_paid.is_(True))
    elif status not in (None, 'all'):
        raise InvalidInput("Status must be 'pending', 'paid' or 'all'")

    priority_rank = case({p: i for i, p in enumerate(PAYABLE_PRIORITIES)}, value=Payable.priority, else_=len(PAYABLE_PRIORITIES))
    payables = query.order_by(Payable.is_paid.asc(), priority_rank, Payable.due_date.asc(),
                              Payable.created_at.desc()).all()

    now = utcnow()
    pending = [p for p in payables if not p.is_paid]
    paid = [p for p in payables if p.is_paid]
    overdue = [p for p in pending if p.due_date and p.due_date < now]
    summary = {
        'totalOwed': sum((p.amount for p in pending), ZERO),
        'totalPaid': sum((p.amount for p in paid), ZERO),
        'partiallyPaid': sum((p.paid_amount for p in pending), ZERO),
        'pendingCount': len(pending),
        'paidCount': len(paid),
        'overdueCount': len(overdue),
        'overdueAmount': sum((p.remaining for p in overdue), ZERO),
    }
    return payables, summary


def update_payable(session, payable_id, user_id, fields):
    """Edit a payable.

    Descriptive fields can always change. The balance (amount, paid amount,
    settled flag) is frozen once the payable is settled, and the paid amount
    never moves below what has already been recorded. Balance changes are
    written with the observed ``paid_amount`` as a guard so a payment landing
    in between is not overwritten.
    """
    payable = get_payable(session, payable_id, user_id)
    seen_paid = payable.paid_amount

    amount = parse_money(fields['amount']) if fields.get('amount') is not None else payable.amount
    if fields.get('paidAmount') is not None:
        paid_amount = parse_money(fields['paidAmount'], 'paid amount', allow_zero=True)
    elif fields.get('isPaid') is True:
        paid_amount = amount
    else:
        paid_amount = seen_paid
    if payable.is_paid:
        if amount != payable.amount or paid_amount != seen_paid or fields.get('isPaid') is False:
            raise AlreadySettled()
    elif paid_amount < seen_paid:
        raise InvalidInput(f'Paid amount cannot be lower than payments already recorded ({seen_paid})')
    if paid_amount > amount:
        raise InvalidInput('Paid amount cannot exceed total amount')
    priority = fields.get('priority')
    if priority is not None and priority not in PAYABLE_PRIORITIES:
        raise InvalidInput(f'Priority must be one of: {", ".join(PAYABLE_PRIORITIES)}')
    due_date = fields.get('dueDate')
    due_date = parse_datetime(due_date, 'dueDate') if due_date else None

    for key in ('name', 'description', 'category', 'priority', 'notes'):
        if fields.get(key) is not None:
            setattr(payable, key, fields[key])
    if 'dueDate' in fields:
        payable.due_date = due_date

    if not payable.is_paid and (amount != payable.amount or paid_amount != seen_paid):
        now = utcnow()
        settled = paid_amount == amount
        result = session.execute(
            update(Payable)
            .where(Payable.id == payable.id,
                   Payable.is_paid.is_(False),
                   Payable.paid_amount == seen_paid)
            .values(amount=amount, paid_amount=paid_amount, is_paid=settled,
                    paid_date=now if settled else None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            log.info('Payable %s changed while user %s was editing it', payable_id, user_id)
            raise Conflict('Payable changed by another request, please retry')
    session.commit()
    return payable


def delete_payable(session, payable_id, user_id):
    payable = get_payable(session, payable_id, user_id)
    session.delete(payable)
    session.commit()
