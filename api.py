from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

import budgets
import ledger
import notifications
import payments
import planning
import rules
from errors import InvalidInput
from models import db, with_retry

api = Blueprint('api', __name__, url_prefix='/api')


def _body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidInput('Request body must be a JSON object')
    return data


def _int_arg(name, default):
    raw = request.args.get(name)
    if raw is None or raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise InvalidInput(f'{name} must be a whole number')


# ==============================
# PAYABLES
# ==============================
@api.route('/payables', methods=['GET'])
@login_required
def list_payables():
    status = request.args.get('status', 'all')
    items, summary = with_retry(lambda: payments.list_payables(db.session, current_user.id, status))
    return jsonify({'payables': [p.to_dict() for p in items], 'summary': summary})


@api.route('/payables', methods=['POST'])
@login_required
def create_payable():
    payable = payments.create_payable(db.session, current_user.id, _body())
    return jsonify({'message': 'Payable created successfully', 'payable': payable.to_dict()})


@api.route('/payables/<int:payable_id>', methods=['GET'])
@login_required
def get_payable(payable_id):
    payable = payments.get_payable(db.session, payable_id, current_user.id)
    return jsonify({'payable': payable.to_dict()})


@api.route('/payables/<int:payable_id>', methods=['PUT'])
@login_required
def update_payable(payable_id):
    payable = payments.update_payable(db.session, payable_id, current_user.id, _body())
    return jsonify({'message': 'Payable updated successfully', 'payable': payable.to_dict()})


@api.route('/payables/<int:payable_id>', methods=['DELETE'])
@login_required
def delete_payable(payable_id):
    payments.delete_payable(db.session, payable_id, current_user.id)
    return jsonify({'message': 'Payable deleted successfully'})


@api.route('/payables/<int:payable_id>/payment', methods=['POST'])
@login_required
def pay_payable(payable_id):
    payable, payment = payments.apply_payment(db.session, payable_id, current_user.id, _body().get('amount'))
    return jsonify({
        'message': 'Payable fully paid!' if payment['isFullyPaid'] else 'Payment recorded successfully',
        'payable': payable.to_dict(),
        'payment': payment,
    })


# ==============================
# BUDGETS
# ==============================
@api.route('/budgets', methods=['GET'])
@login_required
def list_budgets():
    items = with_retry(lambda: budgets.list_budgets(db.session, current_user.id))
    return jsonify([b.to_dict() for b in items])


@api.route('/budgets', methods=['POST'])
@login_required
def upsert_budget():
    data = _body()
    budget, _ = budgets.upsert_budget(db.session, current_user.id,
                                      data.get('category'), data.get('amount'), data.get('period'))
    return jsonify(budget.to_dict()), 201


@api.route('/budgets/<int:budget_id>', methods=['PUT'])
@login_required
def update_budget(budget_id):
    data = _body()
    budget = budgets.update_budget(db.session, budget_id, current_user.id,
                                   data.get('category'), data.get('amount'), data.get('period'))
    return jsonify(budget.to_dict())


@api.route('/budgets/<int:budget_id>', methods=['DELETE'])
@login_required
def delete_budget(budget_id):
    budgets.delete_budget(db.session, budget_id, current_user.id)
    return jsonify({'success': True})


# ==============================
# LEDGER
# ==============================
@api.route('/expenses', methods=['GET'])
@login_required
def list_expenses():
    items = with_retry(lambda: ledger.list_expenses(db.session, current_user.id))
    return jsonify({'expenses': [e.to_dict() for e in items]})


@api.route('/expenses', methods=['POST'])
@login_required
def create_expense():
    expense = ledger.create_expense(db.session, current_user.id, _body())
    return jsonify({'message': 'Expense created successfully', 'expense': expense.to_dict()}), 201


@api.route('/expenses/<int:expense_id>', methods=['DELETE'])
@login_required
def delete_expense(expense_id):
    ledger.delete_expense(db.session, expense_id, current_user.id)
    return jsonify({'message': 'Expense deleted successfully'})


@api.route('/summary')
@login_required
def summary():
    start_date, end_date = ledger.summary_range(request.args.get('range', 'month'),
                                                request.args.get('start'), request.args.get('end'))
    return jsonify(ledger.spending_summary(db.session, current_user.id, start_date, end_date))


# ==============================
# NOTIFICATIONS
# ==============================
@api.route('/notifications', methods=['GET'])
@login_required
def list_notifications():
    limit = _int_arg('limit', current_app.config['NOTIFICATIONS_PAGE_SIZE'])
    offset = _int_arg('offset', 0)
    unread_only = request.args.get('unread') == 'true'
    items, total = with_retry(lambda: notifications.list_notifications(
        db.session, current_user.id, limit=limit, offset=offset, unread_only=unread_only))
    return jsonify({
        'notifications': [n.to_dict() for n in items],
        'pagination': {
            'total': total,
            'limit': limit,
            'offset': offset,
            'hasMore': offset + limit < total,
        },
    })


@api.route('/notifications', methods=['POST'])
@login_required
def create_notification():
    data = _body()
    notification = notifications.create(db.session, current_user.id, data.get('type'), data.get('title'),
                                        data.get('message'), data=data.get('data'),
                                        priority=data.get('priority'))
    return jsonify(notification.to_dict()), 201


@api.route('/notifications/mark-read', methods=['POST'])
@login_required
def mark_notifications_read():
    data = _body()
    count = notifications.mark_read(db.session, current_user.id,
                                    notification_ids=data.get('notificationIds'),
                                    mark_all=bool(data.get('markAll')))
    return jsonify({'message': f'Marked {count} notifications as read'})


@api.route('/notifications/preferences', methods=['GET'])
@login_required
def get_preferences():
    return jsonify(notifications.get_or_create_preferences(db.session, current_user.id).to_dict())


@api.route('/notifications/preferences', methods=['PUT'])
@login_required
def update_preferences():
    return jsonify(notifications.update_preferences(db.session, current_user.id, _body()).to_dict())


@api.route('/notifications/trigger', methods=['POST'])
@login_required
def trigger_notifications():
    kind = _body().get('type')
    created = notifications.run_checks(db.session, current_user.id, kind)
    return jsonify({'message': f'{kind} triggered successfully', 'created': len(created)})


# ==============================
# PLANNING
# ==============================
@api.route('/bill-reminders', methods=['GET'])
@login_required
def list_bill_reminders():
    return jsonify([b.to_dict() for b in planning.list_bill_reminders(db.session, current_user.id)])


@api.route('/bill-reminders', methods=['POST'])
@login_required
def create_bill_reminder():
    bill = planning.create_bill_reminder(db.session, current_user.id, _body())
    return jsonify(bill.to_dict()), 201


@api.route('/bill-reminders/<int:bill_id>', methods=['PUT'])
@login_required
def update_bill_reminder(bill_id):
    return jsonify(planning.update_bill_reminder(db.session, bill_id, current_user.id, _body()).to_dict())


@api.route('/bill-reminders/<int:bill_id>', methods=['DELETE'])
@login_required
def delete_bill_reminder(bill_id):
    planning.delete_bill_reminder(db.session, bill_id, current_user.id)
    return jsonify({'success': True})


@api.route('/bill-reminders/<int:bill_id>/paid', methods=['PUT'])
@login_required
def mark_bill_paid(bill_id):
    return jsonify(planning.mark_bill_paid(db.session, bill_id, current_user.id).to_dict())


@api.route('/saving-goals', methods=['GET'])
@login_required
def list_saving_goals():
    goals = planning.list_saving_goals(db.session, current_user.id)
    return jsonify({'savingGoals': [g.to_dict() for g in goals]})


@api.route('/saving-goals', methods=['POST'])
@login_required
def create_saving_goal():
    goal = planning.create_saving_goal(db.session, current_user.id, _body())
    return jsonify({'message': 'Saving goal created successfully', 'savingGoal': goal.to_dict()}), 201


@api.route('/saving-goals/<int:goal_id>', methods=['PUT'])
@login_required
def update_saving_goal(goal_id):
    goal = planning.update_saving_goal(db.session, goal_id, current_user.id, _body())
    return jsonify({'message': 'Saving goal updated successfully', 'savingGoal': goal.to_dict()})


@api.route('/saving-goals/<int:goal_id>', methods=['DELETE'])
@login_required
def delete_saving_goal(goal_id):
    planning.delete_saving_goal(db.session, goal_id, current_user.id)
    return jsonify({'message': 'Saving goal deleted successfully'})


# ==============================
# BUDGETING RULES
# ==============================
@api.route('/user/profile', methods=['GET'])
@login_required
def get_profile():
    user = with_retry(lambda: rules.get_profile(db.session, current_user.id))
    return jsonify({'user': user.profile()})


@api.route('/user/profile', methods=['PUT'])
@login_required
def update_profile():
    user = rules.update_profile(db.session, current_user.id, _body())
    return jsonify({'message': 'Profile updated successfully', 'user': user.profile()})


@api.route('/rule-period', methods=['GET'])
@login_required
def get_rule_period():
    return jsonify(rules.get_rule_period(db.session, current_user.id))


@api.route('/rule-period', methods=['PUT'])
@login_required
def update_rule_period():
    user = rules.update_rule_period(db.session, current_user.id, _body())
    return jsonify({
        'message': 'Period settings updated successfully',
        'currentPeriod': rules.current_period(user),
        'settings': user.period_settings(),
    })


@api.route('/rule-period', methods=['POST'])
@login_required
def reset_rule_period():
    record = rules.reset_period(db.session, current_user.id)
    current = rules.current_period(current_user)
    if record is None:
        return jsonify({'message': 'Current period is not yet complete', 'currentPeriod': current})
    return jsonify({'message': 'Period reset successfully', 'previousPeriod': record.to_dict(),
                    'newPeriod': current})


@api.route('/rules')
@login_required
def rule_analysis():
    return jsonify(rules.rule_analysis(db.session, current_user.id))
