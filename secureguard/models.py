from datetime import datetime, timezone
from .db import db


def utcnow():
	"""Naive UTC timestamp (SQLite drops tzinfo on the way back)."""
	return datetime.now(timezone.utc).replace(tzinfo=None)


# Campaign statuses
DRAFT = "Draft"
SCHEDULED = "Scheduled"
ACTIVE = "Active"
COMPLETED = "Completed"
CANCELLED = "Cancelled"

CAMPAIGN_STATUSES = (DRAFT, SCHEDULED, ACTIVE, COMPLETED, CANCELLED)
TERMINAL_STATUSES = (COMPLETED, CANCELLED)

# Forward-only lifecycle: status -> statuses it may move to
ALLOWED_TRANSITIONS = {
	DRAFT: {SCHEDULED, ACTIVE, CANCELLED},
	SCHEDULED: {ACTIVE, CANCELLED},
	ACTIVE: {COMPLETED, CANCELLED},
	COMPLETED: set(),
	CANCELLED: set(),
}

# Selector that targets every active user
ALL_USERS = "*"

TRACKING_PLACEHOLDER = "{{tracking_url}}"


class User(db.Model):
	__tablename__ = "users"
	id = db.Column(db.Integer, primary_key=True)
	username = db.Column(db.String(80), unique=True, nullable=False)
	full_name = db.Column(db.String(150))
	email = db.Column(db.String(255), unique=True, nullable=False)
	password_hash = db.Column(db.String(255), nullable=False)
	group = db.Column(db.String(100), index=True)
	is_admin = db.Column(db.Boolean, nullable=False, default=False)
	is_active = db.Column(db.Boolean, nullable=False, default=True)
	created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
	recipients = db.relationship("Recipient", back_populates="user")
	__table_args__ = (
		# Uniqueness ignores case, like the lookups do
		db.Index("uq_users_username_lower", db.func.lower(username), unique=True),
		db.Index("uq_users_email_lower", db.func.lower(email), unique=True),
	)

	def to_dict(self):
		return {
			"id": self.id,
			"username": self.username,
			"full_name": self.full_name,
			"email": self.email,
			"group": self.group,
			"is_admin": self.is_admin,
			"is_active": self.is_active,
			"created_at": _iso(self.created_at),
		}

	def __repr__(self):
		return f"<User {self.username}>"


class Template(db.Model):
	__tablename__ = "templates"
	id = db.Column(db.Integer, primary_key=True)
	name = db.Column(db.String(200), nullable=False)
	subject = db.Column(db.String(255), nullable=False)
	sender_name = db.Column(db.String(150))
	sender_email = db.Column(db.String(255), nullable=False)
	body = db.Column(db.Text, nullable=False)
	category = db.Column(db.String(50), default="phishing")
	created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
	updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

	def snapshot(self):
		"""Frozen copy of the content a campaign sends."""
		return {
			"template_id": self.id,
			"name": self.name,
			"subject": self.subject,
			"sender_name": self.sender_name,
			"sender_email": self.sender_email,
			"body": self.body,
			"category": self.category,
		}

	def to_dict(self):
		data = self.snapshot()
		data.pop("template_id")
		data.update(id=self.id, created_at=_iso(self.created_at), updated_at=_iso(self.updated_at))
		return data

	def __repr__(self):
		return f"<Template {self.name}>"


class Campaign(db.Model):
	__tablename__ = "campaigns"
	id = db.Column(db.Integer, primary_key=True)
	name = db.Column(db.String(200), nullable=False)
	# Live reference, only meaningful before launch
	template_id = db.Column(db.Integer, db.ForeignKey("templates.id", ondelete="SET NULL"), nullable=True)
	template_snapshot = db.Column(db.JSON, nullable=True)
	target_group = db.Column(db.String(100), nullable=False)
	status = db.Column(db.String(20), nullable=False, default=DRAFT, index=True)
	created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
	created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
	scheduled_at = db.Column(db.DateTime)
	launched_at = db.Column(db.DateTime)
	ends_at = db.Column(db.DateTime)
	completed_at = db.Column(db.DateTime)
	cancelled_at = db.Column(db.DateTime)

	template = db.relationship("Template")
	created_by = db.relationship("User")
	recipients = db.relationship(
		"Recipient", back_populates="campaign", order_by="Recipient.id", cascade="all, delete-orphan"
	)

	@property
	def content(self):
		"""Snapshot once launched, live template content before."""
		if self.template_snapshot is not None:
			return self.template_snapshot
		return self.template.snapshot() if self.template else None

	def can_move_to(self, status):
		return status in ALLOWED_TRANSITIONS[self.status]

	def to_dict(self, stats=None):
		data = {
			"id": self.id,
			"name": self.name,
			"template_id": self.template_id,
			"template": self.content,
			"target_group": self.target_group,
			"status": self.status,
			"created_by": self.created_by_id,
			"created_at": _iso(self.created_at),
			"scheduled_at": _iso(self.scheduled_at),
			"launched_at": _iso(self.launched_at),
			"ends_at": _iso(self.ends_at),
			"completed_at": _iso(self.completed_at),
			"cancelled_at": _iso(self.cancelled_at),
		}
		if stats is not None:
			data["stats"] = stats
		return data

	def __repr__(self):
		return f"<Campaign {self.id} {self.status}>"


class Recipient(db.Model):
	__tablename__ = "recipients"
	__table_args__ = (db.UniqueConstraint("campaign_id", "user_id", name="uq_recipient_campaign_user"),)

	id = db.Column(db.Integer, primary_key=True)
	campaign_id = db.Column(db.Integer, db.ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False)
	user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
	# Group at launch time, so later department moves don't rewrite history
	group = db.Column(db.String(100))
	# Global token index
	token = db.Column(db.String(64), unique=True, index=True, nullable=False)
	delivered_at = db.Column(db.DateTime, nullable=False, default=utcnow)
	clicked_at = db.Column(db.DateTime)
	click_count = db.Column(db.Integer, nullable=False, default=0)
	clicked_ip = db.Column(db.String(45))
	clicked_user_agent = db.Column(db.String(255))

	campaign = db.relationship("Campaign", back_populates="recipients")
	user = db.relationship("User", back_populates="recipients")

	@property
	def clicked(self):
		return self.clicked_at is not None

	def to_dict(self):
		return {
			"id": self.id,
			"campaign_id": self.campaign_id,
			"user_id": self.user_id,
			"email": self.user.email if self.user else None,
			"group": self.group,
			"delivered_at": _iso(self.delivered_at),
			"clicked_at": _iso(self.clicked_at),
			"click_count": self.click_count,
		}


def _iso(value):
	return value.isoformat() if value else None
