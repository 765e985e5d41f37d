from secureguard import create_app
from secureguard.cli import ensure_admin
from secureguard.db import db

app = create_app()
with app.app_context():
	db.create_all()
	print("Created tables: users, templates, campaigns, recipients")
	if ensure_admin(app):
		print(f"Created admin user: {app.config['ADMIN_USERNAME']}")
