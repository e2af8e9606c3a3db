from datetime import date
from decimal import Decimal

from flask import Blueprint, render_template, redirect, url_for, request, flash
from flask_login import login_user, login_required, logout_user, current_user

import budgets
import ledger
import notifications
import payments
import rules
from models import db, User, utcnow

views = Blueprint('views', __name__)


@views.app_context_processor
def inject_unread_count():
    if not current_user.is_authenticated:
        return {}
    return {'unread_count': notifications.unread_count(db.session, current_user.id)}


# Routes: Auth
@views.route('/register', methods=['GET', 'POST'])
def register():
    if request.method == 'POST':
        username = request.form.get('username', '').strip()
        password = request.form.get('password', '')
        if not username or not password:
            flash('Username and password required', 'error')
            return redirect(url_for('views.register'))
        if User.query.filter_by(username=username).first():
            flash('Username already exists', 'error')
            return redirect(url_for('views.register'))
        user = User(username=username, name=request.form.get('name', '').strip() or None)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        flash('Registration successful. Please log in.', 'success')
        return redirect(url_for('views.login'))
    return render_template('register.html')


@views.route('/login', methods=['GET', 'POST'])
def login():
    if request.method == 'POST':
        username = request.form.get('username', '')
        password = request.form.get('password', '')
        user = User.query.filter_by(username=username).first()
        if user and user.check_password(password):
            login_user(user)
            return redirect(url_for('views.dashboard'))
        flash('Invalid credentials', 'error')
    return render_template('login.html')


@views.route('/logout')
@login_required
def logout():
    logout_user()
    return redirect(url_for('views.login'))


# Routes: App
@views.route('/')
@login_required
def dashboard():
    now = utcnow()
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    expenses = [e for e in ledger.list_expenses(db.session, current_user.id) if e.date >= month_start]
    month_spent = sum((e.amount for e in expenses if e.type == 'expense'), Decimal('0.00'))
    user_budgets = budgets.list_budgets(db.session, current_user.id)
    rows = []
    for b in user_budgets:
        spent = notifications.category_spending(db.session, current_user.id, b.category, month_start, now)
        rows.append({'budget': b, 'spent': spent, 'over': spent > b.amount})
    payables, payable_summary = payments.list_payables(db.session, current_user.id, 'pending')
    unread, _ = notifications.list_notifications(db.session, current_user.id, limit=5, unread_only=True)
    return render_template('dashboard.html', expenses=expenses, month_spent=month_spent,
                           budgets=rows, payables=payables, payable_summary=payable_summary,
                           notifications=unread, today=date.today(),
                           period=rules.current_period(current_user, now))


@views.route('/add', methods=['POST'])
@login_required
def add_expense():
    ledger.create_expense(db.session, current_user.id, {
        'amount': request.form.get('amount'),
        'type': request.form.get('type') or 'expense',
        'category': request.form.get('category', '').strip() or 'Other',
        'date': request.form.get('occurred_on') or date.today().isoformat(),
        'notes': request.form.get('notes'),
    })
    flash('Entry added', 'success')
    return redirect(url_for('views.dashboard'))


@views.route('/delete/<int:expense_id>', methods=['POST'])
@login_required
def delete_expense(expense_id):
    ledger.delete_expense(db.session, expense_id, current_user.id)
    return redirect(url_for('views.dashboard'))


@views.route('/set-budget', methods=['POST'])
@login_required
def set_budget():
    budget, created = budgets.upsert_budget(db.session, current_user.id, request.form.get('category'),
                                            request.form.get('amount'), request.form.get('period'))
    flash(f'Budget {"created" if created else "updated"}: {budget.category}', 'success')
    return redirect(url_for('views.dashboard'))


@views.route('/payables', methods=['POST'])
@login_required
def add_payable():
    payments.create_payable(db.session, current_user.id, {
        'name': request.form.get('name'),
        'amount': request.form.get('amount'),
        'category': request.form.get('category'),
        'dueDate': request.form.get('due_date'),
    })
    flash('Payable added', 'success')
    return redirect(url_for('views.dashboard'))


@views.route('/payables/<int:payable_id>/pay', methods=['POST'])
@login_required
def pay(payable_id):
    payable, payment = payments.apply_payment(db.session, payable_id, current_user.id,
                                              request.form.get('amount'))
    if payment['isFullyPaid']:
        flash(f'{payable.name} fully paid!', 'success')
    else:
        flash(f'Payment recorded. Remaining: {payment["remainingAmount"]}', 'success')
    return redirect(url_for('views.dashboard'))


@views.route('/notifications/read', methods=['POST'])
@login_required
def read_notifications():
    notifications.mark_read(db.session, current_user.id, mark_all=True)
    return redirect(url_for('views.dashboard'))


# Reports
@views.route('/report')
@login_required
def report():
    return render_template('report.html')
