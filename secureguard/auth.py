from functools import wraps

from flask import g, session

from .db import db
from .errors import Unauthorized
from .models import User

SESSION_KEY = "user_id"


def current_principal() -> User | None:
    """The logged-in user for this request, if any."""
    user_id = session.get(SESSION_KEY)
    if user_id is None:
        return None
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        session.pop(SESSION_KEY, None)
        return None
    return user


def log_in(user: User) -> None:
    session.clear()
    session[SESSION_KEY] = user.id


def log_out() -> None:
    session.clear()


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        principal = current_principal()
        if principal is None:
            raise Unauthorized("Please log in to access this page.")
        g.principal = principal
        return view(*args, **kwargs)
    return wrapped
