from app import create_app
from models import db, User

app = create_app()
username = input("Enter username to delete: ")

with app.app_context():
    user = User.query.filter_by(username=username).first()
    if user:
        # cascades to every row the user owns
        db.session.delete(user)
        db.session.commit()
        print(f"User '{username}' deleted.")
    else:
        print(f"User '{username}' not found.")
