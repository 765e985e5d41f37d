"""
Template catalog: reusable simulated-phishing message content.
"""

import logging

from .errors import TemplateInUse, TemplateNotFound, ValidationError, non_string_fields
from .models import ACTIVE, DRAFT, SCHEDULED, TRACKING_PLACEHOLDER, Campaign, Template

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("name", "subject", "sender_name", "sender_email", "body", "category")
REQUIRED_FIELDS = ("name", "subject", "sender_email", "body")

# Campaigns in these states still read the live template
BLOCKING_STATUSES = (DRAFT, SCHEDULED, ACTIVE)

PREVIEW_URL = "#"


def render_content(content: dict, tracking_url: str) -> dict:
    """Fill the tracking link placeholder in a template snapshot."""
    return {
        "subject": content["subject"],
        "sender_name": content.get("sender_name"),
        "sender_email": content["sender_email"],
        "body": content["body"].replace(TRACKING_PLACEHOLDER, tracking_url),
    }


class TemplateCatalog:

    def __init__(self, session):
        self.session = session

    def get(self, template_id: int) -> Template | None:
        return self.session.get(Template, template_id)

    def require(self, template_id: int) -> Template:
        template = self.get(template_id) if template_id is not None else None
        if template is None:
            raise TemplateNotFound(f"Template {template_id} not found.")
        return template

    def list(self) -> list[Template]:
        return self.session.query(Template).order_by(Template.name.asc()).all()

    def create(self, **fields) -> Template:
        data = self._clean(fields, partial=False)
        template = Template(**data)
        self.session.add(template)
        self.session.commit()
        logger.info(f"template_created: template_id={template.id}, name={template.name}")
        return template

    def update(self, template_id: int, **fields) -> Template:
        # Launched campaigns carry their own snapshot, so editing is always safe
        template = self.require(template_id)
        for key, value in self._clean(fields, partial=True).items():
            setattr(template, key, value)
        self.session.commit()
        logger.info(f"template_updated: template_id={template.id}")
        return template

    def delete(self, template_id: int) -> None:
        template = self.require(template_id)

        blocking = (
            self.session.query(Campaign.id)
            .filter(Campaign.template_id == template.id, Campaign.status.in_(BLOCKING_STATUSES))
            .order_by(Campaign.id.asc())
            .all()
        )
        if blocking:
            ids = ", ".join(str(row.id) for row in blocking)
            raise TemplateInUse(f"Template {template.id} is used by campaign(s) {ids}.")

        # Clear the live reference on finished campaigns first (they keep their snapshot)
        self.session.query(Campaign).filter(Campaign.template_id == template.id).update(
            {Campaign.template_id: None}, synchronize_session=False
        )
        self.session.delete(template)
        self.session.commit()
        logger.info(f"template_deleted: template_id={template_id}")

    def preview(self, template_id: int) -> dict:
        return render_content(self.require(template_id).snapshot(), PREVIEW_URL)

    def _clean(self, fields, partial):
        unknown = sorted(set(fields) - set(EDITABLE_FIELDS))
        errors = {key: "unknown field" for key in unknown}
        errors.update(non_string_fields(**{key: fields[key] for key in EDITABLE_FIELDS if key in fields}))

        data = {}
        for key in EDITABLE_FIELDS:
            if key not in fields or key in errors:
                continue
            value = fields[key]
            data[key] = value.strip() if isinstance(value, str) else value

        for key in REQUIRED_FIELDS:
            if key not in errors and (not partial or key in data) and not data.get(key):
                errors[key] = "required"
        if data.get("sender_email") and "@" not in data["sender_email"]:
            errors["sender_email"] = "invalid address"

        if errors:
            raise ValidationError("Invalid template data.", fields=errors)
        return data
