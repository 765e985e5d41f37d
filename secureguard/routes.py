from flask import Blueprint, Response, current_app, g, jsonify, request
from datetime import datetime, timezone
import csv
import io
import logging

from .auth import log_in, log_out, login_required
from .campaigns import CampaignRegistry
from .catalog import TemplateCatalog
from .db import db
from .errors import SecureGuardError, Unauthorized, ValidationError, non_string_fields
from .identity import IdentityStore
from .stats import StatsAggregator
from .tracking import TrackingRecorder

logger = logging.getLogger(__name__)

bp = Blueprint("main", __name__)

# Same page for every hit on a tracking link, whatever happened behind it
LANDING_HTML = """<!doctype html>
<meta charset="utf-8">
<title>Security Awareness</title>
<div style="font-family: Arial, sans-serif; max-width: 560px; margin: 60px auto; text-align: center;">
  <h2>This was a simulated phishing email</h2>
  <p>The message you just opened was part of a security awareness exercise run by your organization.</p>
  <p>Before clicking a link, check the sender address, hover over the link to see where it really goes,
     and be wary of urgent requests for passwords or payments.</p>
  <p>If in doubt, report the email to your IT or security team.</p>
</div>
"""


# ---------- service wiring ---------- #

def _identity():
    return IdentityStore(db.session, current_app.config["MIN_PASSWORD_LENGTH"])


def _catalog():
    return TemplateCatalog(db.session)


def _registry():
    cfg = current_app.config
    return CampaignRegistry(
        db.session,
        identity=_identity(),
        catalog=_catalog(),
        token_bytes=cfg["TOKEN_BYTES"],
        max_token_attempts=cfg["TOKEN_MAX_ATTEMPTS"],
    )


def _stats():
    return StatsAggregator(db.session)


# ---------- request helpers ---------- #

def _payload() -> dict:
    """JSON body, or the submitted form for plain HTML posts."""
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _int(value, field):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{field}' must be an integer.", fields={field: "must be an integer"})


def _datetime(value, field):
    """Parse an ISO 8601 timestamp into naive UTC; None stays None."""
    if value in (None, ""):
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"'{field}' must be an ISO 8601 timestamp.", fields={field: "invalid timestamp"})
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _client_ip():
    # Handles proxies too: first hop of X-Forwarded-For
    ip = request.headers.get("X-Forwarded-For", request.remote_addr)
    if ip and "," in ip:
        ip = ip.split(",")[0].strip()
    return ip


@bp.app_errorhandler(SecureGuardError)
def handle_error(e: SecureGuardError):
    db.session.rollback()
    return jsonify(e.to_dict()), e.status_code


# ---------- auth ---------- #

@bp.post("/signup")
def signup():
    data = _payload()
    password = data.get("password") or ""
    confirm = data.get("confirm_password", data.get("confirmPassword"))

    if confirm is not None and password != confirm:
        raise ValidationError("Passwords do not match.", fields={"confirm_password": "does not match"})

    user = _identity().create(
        username=data.get("username"),
        email=data.get("email"),
        password=password,
        full_name=data.get("full_name", data.get("fullName")),
        group=data.get("group"),
    )
    return jsonify({"message": "Account created successfully! You can now login.", "user": user.to_dict()}), 201


@bp.post("/login")
def login():
    data = _payload()
    identity = _identity()
    username, password = data.get("username"), data.get("password")
    if not isinstance(username, str) or not isinstance(password, str):
        username, password = "", ""
    user = identity.find_by_username(username.strip())

    if not identity.validate_credential(user, password):
        logger.info("login_failed")
        raise Unauthorized("Invalid username or password.")

    log_in(user)
    logger.info(f"login_succeeded: user_id={user.id}")
    return jsonify({"message": "Logged in successfully.", "user": user.to_dict()})


@bp.route("/logout", methods=["GET", "POST"])
def logout():
    log_out()
    return jsonify({"message": "You have been logged out."})


@bp.get("/profile")
@login_required
def profile():
    return jsonify(g.principal.to_dict())


# ---------- dashboard ---------- #

@bp.get("/dashboard")
@login_required
def dashboard():
    stats = _stats()
    return jsonify({
        "user": g.principal.to_dict(),
        "stats": stats.organization_stats(),
        "recent_campaigns": stats.campaign_overview()[:5],
        "click_timeline": stats.click_timeline(),
    })


# ---------- users ---------- #

@bp.get("/users")
@login_required
def list_users():
    include_inactive = request.args.get("include_inactive") in ("1", "true", "yes")
    return jsonify([u.to_dict() for u in _identity().list_all(include_inactive=include_inactive)])


@bp.post("/users")
@login_required
def create_user():
    data = _payload()
    user = _identity().create(
        username=data.get("username"),
        email=data.get("email"),
        password=data.get("password"),
        full_name=data.get("full_name"),
        group=data.get("group"),
        is_admin=bool(data.get("is_admin")) and g.principal.is_admin,
    )
    return jsonify(user.to_dict()), 201


@bp.post("/users/import")
@login_required
def import_users():
    # CSV upload (Name,Email per row) or the same text in a 'csv' field
    upload_file = request.files.get("upload_file")
    if upload_file and upload_file.filename:
        text = upload_file.stream.read().decode("utf-8-sig")
        group = request.form.get("group")
    else:
        data = _payload()
        text = data.get("csv") or ""
        group = data.get("group")
        errors = non_string_fields(csv=text, group=group)
        if errors:
            raise ValidationError("Invalid import data.", fields=errors)

    if not text.strip():
        raise ValidationError("Nothing to import.", fields={"csv": "required"})

    added = _identity().import_csv(text, group=(group or "").strip() or None)
    return jsonify({"imported": added})


@bp.patch("/users/<int:user_id>")
@login_required
def update_user(user_id: int):
    identity = _identity()
    data = _payload()
    fields = {k: data[k] for k in ("full_name", "email", "group", "password") if k in data}
    user = identity.update(identity.get(user_id), **fields)
    return jsonify(user.to_dict())


@bp.delete("/users/<int:user_id>")
@login_required
def deactivate_user(user_id: int):
    identity = _identity()
    user = identity.deactivate(identity.get(user_id))
    return jsonify(user.to_dict())


@bp.get("/users/<int:user_id>/history")
@login_required
def user_history(user_id: int):
    user = _identity().get(user_id)
    history = _stats().user_history(user.id)
    history["user"] = user.to_dict()
    return jsonify(history)


# ---------- templates ---------- #

@bp.get("/templates")
@login_required
def list_templates():
    return jsonify([t.to_dict() for t in _catalog().list()])


@bp.post("/templates")
@login_required
def create_template():
    template = _catalog().create(**_payload())
    return jsonify(template.to_dict()), 201


@bp.get("/templates/<int:template_id>")
@login_required
def get_template(template_id: int):
    return jsonify(_catalog().require(template_id).to_dict())


@bp.route("/templates/<int:template_id>", methods=["PUT", "PATCH"])
@login_required
def update_template(template_id: int):
    template = _catalog().update(template_id, **_payload())
    return jsonify(template.to_dict())


@bp.delete("/templates/<int:template_id>")
@login_required
def delete_template(template_id: int):
    _catalog().delete(template_id)
    return jsonify({"deleted": template_id})


@bp.get("/templates/<int:template_id>/preview")
@login_required
def preview_template(template_id: int):
    return jsonify(_catalog().preview(template_id))


# ---------- campaigns ---------- #

@bp.get("/campaigns")
@login_required
def list_campaigns():
    return jsonify(_stats().campaign_overview())


@bp.post("/campaigns")
@login_required
def create_campaign():
    data = _payload()
    campaign = _registry().create_campaign(
        name=data.get("name"),
        template_id=_int(data.get("template_id"), "template_id"),
        target_group=data.get("target_group"),
        created_by=g.principal,
        ends_at=_datetime(data.get("ends_at"), "ends_at"),
    )
    return jsonify(campaign.to_dict()), 201


@bp.get("/campaigns/<int:cid>")
@login_required
def get_campaign(cid: int):
    campaign = _registry().get(cid)
    stats = _stats()
    data = campaign.to_dict(stats=stats.campaign_stats(cid))
    data["groups"] = stats.per_group_breakdown(cid)
    data["recipients"] = [r.to_dict() for r in campaign.recipients]
    return jsonify(data)


@bp.post("/campaigns/<int:cid>/schedule")
@login_required
def schedule_campaign(cid: int):
    when = _datetime(_payload().get("scheduled_at"), "scheduled_at")
    return jsonify(_registry().schedule(cid, when).to_dict())


@bp.post("/campaigns/<int:cid>/launch")
@login_required
def launch_campaign(cid: int):
    campaign = _registry().launch(cid)
    return jsonify(campaign.to_dict(stats=_stats().campaign_stats(cid)))


@bp.post("/campaigns/<int:cid>/cancel")
@login_required
def cancel_campaign(cid: int):
    return jsonify(_registry().cancel(cid).to_dict())


@bp.post("/campaigns/<int:cid>/complete")
@login_required
def complete_campaign(cid: int):
    return jsonify(_registry().complete(cid).to_dict())


@bp.get("/campaigns/<int:cid>/stats")
@login_required
def campaign_stats(cid: int):
    return jsonify(_stats().campaign_stats(cid))


@bp.get("/campaigns/<int:cid>/groups")
@login_required
def campaign_groups(cid: int):
    return jsonify(_stats().per_group_breakdown(cid))


@bp.get("/campaigns/<int:cid>/messages")
@login_required
def campaign_messages(cid: int):
    base = current_app.config.get("TRACKING_BASE_URL") or request.url_root
    return jsonify(_registry().render_messages(cid, base))


# ---------- results export ---------- #

@bp.get("/results.csv")
@login_required
def results_csv():
    """
    Download recipient results as CSV; supports ?campaign_id=<id> filter.
    """
    campaign_id = request.args.get("campaign_id", type=int)
    rows = _stats().export_rows(campaign_id)

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(["recipient_id", "campaign_id", "campaign_name", "recipient_email", "group",
                     "delivered_at", "clicked_at", "click_count", "ip"])

    for r in rows:
        writer.writerow([r.recipient_id, r.cid, r.campaign_name, r.recipient_email, r.group or "",
                         r.delivered_at, r.clicked_at or "", r.click_count, r.clicked_ip or ""])

    csv_bytes = output.getvalue()
    output.close()

    return Response(
        csv_bytes,
        mimetype="text/csv",
        headers={"Content-Disposition": "attachment; filename=secureguard_results.csv"}
    )


# ---------- tracking (public) ---------- #

@bp.get("/track/<token>")
@bp.get("/track/<int:cid>/<token>")
def track_click(token: str, cid: int | None = None):
    """Record a click for the token, then always show the same landing page."""
    try:
        TrackingRecorder(db.session).record_click(
            token,
            ip=_client_ip(),
            user_agent=request.headers.get("User-Agent"),
            campaign_id=cid,
        )
    except Exception:
        # Nothing about the outcome may reach the clicking party
        logger.exception("tracking_failed")
        db.session.rollback()

    return _landing()


@bp.get("/track/<path:rest>")
def track_malformed(rest: str):
    # Unparseable tracking links look exactly like real ones
    logger.info("tracking_malformed_path")
    return _landing()


def _landing():
    return Response(
        LANDING_HTML,
        status=200,
        mimetype="text/html",
        headers={"Cache-Control": "no-store, no-cache, must-revalidate, max-age=0"},
    )
