from decimal import Decimal

import pytest
from sqlalchemy import update

import payments
from app import create_app
from config import TestingConfig
from errors import AlreadySettled, Conflict, ExceedsRemaining, InvalidInput, NotFound
from models import db, Expense, Payable, User


def ledger_entries(session, user):
    return session.query(Expense).filter_by(user_id=user.id).order_by(Expense.id).all()


@pytest.fixture
def file_session(tmp_path):
    """A session on a file database, so a second connection can write behind its back."""
    class FileConfig(TestingConfig):
        SQLALCHEMY_DATABASE_URI = f'sqlite:///{tmp_path / "finance.db"}'

    app = create_app(FileConfig)
    with app.app_context():
        db.create_all()
        yield db.session
        db.session.remove()
        db.drop_all()


def write_behind(payable_id, paid_amount):
    with db.engine.begin() as conn:
        conn.execute(update(Payable).where(Payable.id == payable_id).values(paid_amount=Decimal(paid_amount)))


class TestApplyPayment:

    def test_partial_then_final_payment(self, session, user, make_payable):
        payable = make_payable(user, '300')

        payable, payment = payments.apply_payment(session, payable.id, user.id, 100)
        assert payment == {'amount': Decimal('100.00'), 'remainingAmount': Decimal('200.00'), 'isFullyPaid': False}
        assert payable.paid_amount == Decimal('100.00')
        assert payable.is_paid is False
        assert payable.paid_date is None

        payable, payment = payments.apply_payment(session, payable.id, user.id, '200')
        assert payment == {'amount': Decimal('200.00'), 'remainingAmount': Decimal('0.00'), 'isFullyPaid': True}
        assert payable.paid_amount == Decimal('300.00')
        assert payable.is_paid is True
        assert payable.paid_date is not None

        entries = ledger_entries(session, user)
        assert [e.amount for e in entries] == [Decimal('100.00'), Decimal('200.00')]

    @pytest.mark.parametrize('installments', [
        ['33.33', '33.33', '33.34'],
        ['0.1', '0.2', '99.7'],
        ['0.01'] * 7 + ['99.93'],
    ])
    def test_installments_settle_without_drift(self, session, user, make_payable, installments):
        payable = make_payable(user, '100')
        for amount in installments:
            payable, payment = payments.apply_payment(session, payable.id, user.id, amount)
        assert payment['isFullyPaid'] is True
        assert payable.is_paid is True
        assert payable.paid_amount == payable.amount == Decimal('100.00')
        assert len(ledger_entries(session, user)) == len(installments)

    def test_float_amounts_do_not_drift(self, session, user, make_payable):
        payable = make_payable(user, '0.3')
        payments.apply_payment(session, payable.id, user.id, 0.1)
        payable, payment = payments.apply_payment(session, payable.id, user.id, 0.2)
        assert payment['isFullyPaid'] is True
        assert payable.paid_amount == Decimal('0.30')

    def test_exceeding_payment_is_rejected_without_side_effects(self, session, user, make_payable):
        payable = make_payable(user, '50', paid_amount='40')

        with pytest.raises(ExceedsRemaining) as excinfo:
            payments.apply_payment(session, payable.id, user.id, 20)

        assert excinfo.value.remaining == Decimal('10.00')
        assert 'Remaining: 10.00' in excinfo.value.message
        payable = session.get(Payable, payable.id)
        assert payable.paid_amount == Decimal('40.00')
        assert payable.is_paid is False
        assert ledger_entries(session, user) == []

    def test_settled_payable_rejects_any_payment(self, session, user, make_payable):
        payable = make_payable(user, '25', paid_amount='25')

        with pytest.raises(AlreadySettled):
            payments.apply_payment(session, payable.id, user.id, '0.01')
        with pytest.raises(InvalidInput):
            payments.apply_payment(session, payable.id, user.id, 0)
        assert ledger_entries(session, user) == []

    def test_paying_after_settlement_is_rejected(self, session, user, make_payable):
        payable = make_payable(user, '10')
        payments.apply_payment(session, payable.id, user.id, 10)
        with pytest.raises(AlreadySettled):
            payments.apply_payment(session, payable.id, user.id, 10)
        assert len(ledger_entries(session, user)) == 1

    def test_other_users_payable_is_not_found(self, session, user, other_user, make_payable):
        payable = make_payable(other_user, '100')
        with pytest.raises(NotFound):
            payments.apply_payment(session, payable.id, user.id, 10)
        with pytest.raises(NotFound):
            payments.apply_payment(session, 9999, user.id, 10)
        assert session.get(Payable, payable.id).paid_amount == Decimal('0.00')

    @pytest.mark.parametrize('amount', [None, '', 'abc', -5, 0, '0.001', True, 'NaN', 'Infinity'])
    def test_invalid_amounts(self, session, user, make_payable, amount):
        payable = make_payable(user, '100')
        with pytest.raises(InvalidInput):
            payments.apply_payment(session, payable.id, user.id, amount)
        assert ledger_entries(session, user) == []

    def test_ledger_entry_describes_the_payable(self, session, user, make_payable):
        payable = make_payable(user, '80', name='Laptop', category='Family', description='from Sam')
        payments.apply_payment(session, payable.id, user.id, '30')

        entry, = ledger_entries(session, user)
        assert entry.type == 'expense'
        assert entry.amount == Decimal('30.00')
        assert entry.category == 'Debt Payment - Family'
        assert entry.notes == 'Payment for: Laptop (from Sam)'

    def test_notes_without_description(self, session, user, make_payable):
        payable = make_payable(user, '80', name='Rent')
        payments.apply_payment(session, payable.id, user.id, '30')
        assert ledger_entries(session, user)[0].notes == 'Payment for: Rent'


class TestPayableCrud:

    def test_create_defaults(self, session, user):
        payable = payments.create_payable(session, user.id, {'name': 'Loan', 'amount': '120.5'})
        assert payable.amount == Decimal('120.50')
        assert payable.paid_amount == Decimal('0.00')
        assert payable.category == 'Personal'
        assert payable.priority == 'Medium'
        assert payable.is_paid is False

    @pytest.mark.parametrize('fields', [
        {'amount': 10},
        {'name': 'Loan'},
        {'name': 'Loan', 'amount': -1},
        {'name': 'Loan', 'amount': 10, 'priority': 'Urgent'},
        {'name': 'Loan', 'amount': 10, 'dueDate': 'next week'},
    ])
    def test_create_validation(self, session, user, fields):
        with pytest.raises(InvalidInput):
            payments.create_payable(session, user.id, fields)
        assert session.query(Payable).count() == 0

    def test_list_orders_unpaid_first_and_summarises(self, session, user, other_user, make_payable):
        make_payable(user, '100', paid_amount='100', name='Done')
        make_payable(user, '50', paid_amount='20', name='Low', priority='Low')
        make_payable(user, '30', name='High', priority='High')
        make_payable(other_user, '999', name='Not mine')

        items, summary = payments.list_payables(session, user.id)
        assert [p.name for p in items] == ['High', 'Low', 'Done']
        assert summary['totalOwed'] == Decimal('80.00')
        assert summary['totalPaid'] == Decimal('100.00')
        assert summary['partiallyPaid'] == Decimal('20.00')
        assert summary['pendingCount'] == 2
        assert summary['paidCount'] == 1

        pending, _ = payments.list_payables(session, user.id, 'pending')
        assert {p.name for p in pending} == {'High', 'Low'}
        with pytest.raises(InvalidInput):
            payments.list_payables(session, user.id, 'overdue')

    def test_overdue_summary(self, session, user, make_payable):
        from datetime import datetime
        make_payable(user, '40', paid_amount='15', due_date=datetime(2000, 1, 1))
        _, summary = payments.list_payables(session, user.id)
        assert summary['overdueCount'] == 1
        assert summary['overdueAmount'] == Decimal('25.00')

    def test_update_auto_settles(self, session, user, make_payable):
        payable = make_payable(user, '60')
        payable = payments.update_payable(session, payable.id, user.id, {'paidAmount': '60'})
        assert payable.is_paid is True
        assert payable.paid_date is not None

    def test_update_mark_paid_fills_paid_amount(self, session, user, make_payable):
        payable = make_payable(user, '60', paid_amount='10')
        payable = payments.update_payable(session, payable.id, user.id, {'isPaid': True})
        assert payable.paid_amount == Decimal('60.00')
        assert payable.is_paid is True

    def test_update_rejects_paid_above_amount(self, session, user, make_payable):
        payable = make_payable(user, '60')
        with pytest.raises(InvalidInput):
            payments.update_payable(session, payable.id, user.id, {'paidAmount': '70'})
        with pytest.raises(InvalidInput):
            payments.update_payable(session, payable.id, user.id, {'paidAmount': '-1'})

    def test_delete_scoped_to_owner(self, session, user, other_user, make_payable):
        payable = make_payable(other_user, '60')
        with pytest.raises(NotFound):
            payments.delete_payable(session, payable.id, user.id)
        payments.delete_payable(session, payable.id, other_user.id)
        assert session.query(Payable).count() == 0

    def test_settled_payable_cannot_be_reopened(self, session, user, make_payable):
        payable = make_payable(user, '50')
        payments.apply_payment(session, payable.id, user.id, 50)

        for fields in ({'paidAmount': '0'}, {'isPaid': False}, {'amount': '80'}):
            with pytest.raises(AlreadySettled):
                payments.update_payable(session, payable.id, user.id, fields)
        with pytest.raises(AlreadySettled):
            payments.apply_payment(session, payable.id, user.id, 50)

        payable = session.get(Payable, payable.id)
        assert payable.is_paid is True
        assert payable.paid_amount == Decimal('50.00')
        assert sum(e.amount for e in ledger_entries(session, user)) == Decimal('50.00')

    def test_settled_payable_keeps_descriptive_edits(self, session, user, make_payable):
        payable = make_payable(user, '50', paid_amount='50')
        payable = payments.update_payable(session, payable.id, user.id,
                                          {'name': 'Renamed', 'notes': 'done', 'isPaid': True, 'paidAmount': '50'})
        assert payable.name == 'Renamed'
        assert payable.notes == 'done'
        assert payable.is_paid is True

    def test_paid_amount_never_moves_backwards(self, session, user, make_payable):
        payable = make_payable(user, '100')
        payments.apply_payment(session, payable.id, user.id, 40)

        with pytest.raises(InvalidInput, match='payments already recorded'):
            payments.update_payable(session, payable.id, user.id, {'paidAmount': '10'})
        assert session.get(Payable, payable.id).paid_amount == Decimal('40.00')

        payable = payments.update_payable(session, payable.id, user.id, {'paidAmount': '60'})
        assert payable.paid_amount == Decimal('60.00')
        assert payable.is_paid is False


class TestStaleReads:
    """A second connection changes the row after this session has read it."""

    def setup_payable(self, session):
        user = User(username='carol')
        user.set_password('pw')
        session.add(user)
        session.commit()
        payable = Payable(user_id=user.id, name='Loan', category='Personal',
                          amount=Decimal('100'), paid_amount=Decimal('0'), is_paid=False)
        session.add(payable)
        session.commit()
        # loads the row into the identity map
        assert payable.paid_amount == Decimal('0.00')
        return user, payable

    def test_payment_checks_the_stored_balance(self, file_session):
        session = file_session
        user, payable = self.setup_payable(session)
        write_behind(payable.id, '70.00')
        assert payable.paid_amount == Decimal('0.00')

        with pytest.raises(ExceedsRemaining) as excinfo:
            payments.apply_payment(session, payable.id, user.id, 50)
        assert excinfo.value.remaining == Decimal('30.00')
        assert session.get(Payable, payable.id).paid_amount == Decimal('70.00')
        assert session.query(Expense).count() == 0

        payable, payment = payments.apply_payment(session, payable.id, user.id, 30)
        assert payment['isFullyPaid'] is True
        assert payable.paid_amount == Decimal('100.00')
        assert session.query(Expense).count() == 1

    def test_payment_on_row_settled_elsewhere(self, file_session):
        session = file_session
        user, payable = self.setup_payable(session)
        with db.engine.begin() as conn:
            conn.execute(update(Payable).where(Payable.id == payable.id)
                         .values(paid_amount=Decimal('100.00'), is_paid=True))

        with pytest.raises(AlreadySettled):
            payments.apply_payment(session, payable.id, user.id, 10)
        assert session.query(Expense).count() == 0

    def test_edit_does_not_overwrite_a_concurrent_payment(self, file_session):
        session = file_session
        user, payable = self.setup_payable(session)
        write_behind(payable.id, '70.00')

        with pytest.raises(Conflict):
            payments.update_payable(session, payable.id, user.id, {'paidAmount': '20'})
        assert session.get(Payable, payable.id).paid_amount == Decimal('70.00')
