from app import create_app
from models import User, Payable, Expense

app = create_app()

with app.app_context():
    print("Users in DB:")
    for user in User.query.all():
        print(f"- {user.id} | {user.username}")

    print("\nPayables in DB:")
    for p in Payable.query.order_by(Payable.user_id, Payable.id).all():
        state = "settled" if p.is_paid else f"{p.remaining} remaining"
        print(f"- {p.id} | {p.name} | {p.paid_amount}/{p.amount} ({state}) | User {p.user_id}")

    print("\nLedger entries in DB:")
    for e in Expense.query.order_by(Expense.user_id, Expense.date).all():
        print(f"- {e.id} | {e.type} | {e.category} | {e.amount} | User {e.user_id}")
