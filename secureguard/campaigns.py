"""
Campaign registry.

Creates campaigns, drives their lifecycle (Draft -> Scheduled -> Active ->
Completed/Cancelled) and issues one tracking token per recipient at
launch. Launch runs as a single transaction guarded by a conditional
status update, so a retried or concurrent launch can never issue a
second set of tokens.
"""

import logging
import secrets
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from .catalog import TemplateCatalog, render_content
from .errors import (
    AlreadyLaunched,
    CampaignNotFound,
    EmptyTargetGroup,
    InvalidState,
    SecureGuardError,
    TokenCollision,
    ValidationError,
    non_string_fields,
)
from .identity import IdentityStore
from .models import (
    ACTIVE,
    CANCELLED,
    COMPLETED,
    DRAFT,
    SCHEDULED,
    TERMINAL_STATUSES,
    Campaign,
    Recipient,
    utcnow,
)

logger = logging.getLogger(__name__)


class CampaignRegistry:

    def __init__(self, session, identity: IdentityStore | None = None,
                 catalog: TemplateCatalog | None = None, token_bytes: int = 24,
                 max_token_attempts: int = 5, token_factory=None):
        self.session = session
        self.identity = identity or IdentityStore(session)
        self.catalog = catalog or TemplateCatalog(session)
        self.max_token_attempts = max_token_attempts
        self.token_factory = token_factory or (lambda: secrets.token_urlsafe(token_bytes))

    # ---------- queries ---------- #

    def get(self, campaign_id: int) -> Campaign:
        campaign = self.session.get(Campaign, campaign_id)
        if campaign is None:
            raise CampaignNotFound(f"Campaign {campaign_id} not found.")
        return campaign

    def list(self, status: str | None = None) -> list[Campaign]:
        query = self.session.query(Campaign)
        if status:
            query = query.filter(Campaign.status == status)
        return query.order_by(Campaign.id.desc()).all()

    # ---------- lifecycle ---------- #

    def create_campaign(self, name: str, template_id: int, target_group: str,
                        created_by=None, ends_at: datetime | None = None) -> Campaign:
        errors = non_string_fields(name=name, target_group=target_group)
        if errors:
            raise ValidationError("Invalid campaign data.", fields=errors)

        name = (name or "").strip()
        target_group = (target_group or "").strip()

        if not name:
            errors["name"] = "required"
        if not target_group:
            errors["target_group"] = "required"
        if errors:
            raise ValidationError("Invalid campaign data.", fields=errors)

        template = self.catalog.require(template_id)
        if not self.identity.members_of(target_group):
            raise EmptyTargetGroup(target_group)

        campaign = Campaign(
            name=name,
            template_id=template.id,
            target_group=target_group,
            status=DRAFT,
            created_by_id=created_by.id if created_by is not None else None,
            ends_at=ends_at,
        )
        self.session.add(campaign)
        self.session.commit()
        logger.info(f"campaign_created: campaign_id={campaign.id}, name={name}, target_group={target_group}")
        return campaign

    def schedule(self, campaign_id: int, when: datetime) -> Campaign:
        campaign = self.get(campaign_id)
        if when is None:
            raise ValidationError("Invalid schedule.", fields={"scheduled_at": "required"})
        # Rescheduling a scheduled campaign just moves the date
        if campaign.status != SCHEDULED and not campaign.can_move_to(SCHEDULED):
            raise InvalidState(f"Cannot schedule a campaign that is {campaign.status}.")

        campaign.status = SCHEDULED
        campaign.scheduled_at = when
        self.session.commit()
        logger.info(f"campaign_scheduled: campaign_id={campaign.id}, scheduled_at={when.isoformat()}")
        return campaign

    def launch(self, campaign_id: int, now: datetime | None = None) -> Campaign:
        campaign = self.get(campaign_id)
        if campaign.launched_at is not None:
            raise AlreadyLaunched(f"Campaign {campaign.id} was launched at {campaign.launched_at.isoformat()}.")
        if not campaign.can_move_to(ACTIVE):
            raise InvalidState(f"Cannot launch a campaign that is {campaign.status}.")

        template = self.catalog.require(campaign.template_id)
        members = self.identity.members_of(campaign.target_group)
        if not members:
            raise EmptyTargetGroup(campaign.target_group)

        now = now or utcnow()

        # Claim the launch: only one caller flips the status
        claimed = (
            self.session.query(Campaign)
            .filter(
                Campaign.id == campaign.id,
                Campaign.status.in_((DRAFT, SCHEDULED)),
                Campaign.launched_at.is_(None),
            )
            .update(
                {
                    Campaign.status: ACTIVE,
                    Campaign.launched_at: now,
                    Campaign.template_snapshot: template.snapshot(),
                },
                synchronize_session=False,
            )
        )
        if claimed != 1:
            self.session.rollback()
            raise AlreadyLaunched(f"Campaign {campaign.id} has already been launched.")

        try:
            tokens = self._issue_tokens(len(members))
            for user, token in zip(members, tokens):
                self.session.add(Recipient(
                    campaign_id=campaign.id,
                    user_id=user.id,
                    group=user.group,
                    token=token,
                    delivered_at=now,
                ))
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            logger.error(f"campaign_launch_conflict: campaign_id={campaign_id}")
            raise TokenCollision(f"Campaign {campaign_id} could not be launched: tracking token conflict.")
        except Exception:
            self.session.rollback()
            raise

        self.session.refresh(campaign)
        logger.info(f"campaign_launched: campaign_id={campaign.id}, recipients={len(members)}")
        return campaign

    def cancel(self, campaign_id: int) -> Campaign:
        campaign = self.get(campaign_id)
        if campaign.status in TERMINAL_STATUSES:
            return campaign

        # Issued tokens stay valid: clicks after cancellation are still recorded
        campaign.status = CANCELLED
        campaign.cancelled_at = utcnow()
        self.session.commit()
        logger.info(f"campaign_cancelled: campaign_id={campaign.id}")
        return campaign

    def complete(self, campaign_id: int, now: datetime | None = None) -> Campaign:
        campaign = self.get(campaign_id)
        if campaign.status == COMPLETED:
            return campaign
        if not campaign.can_move_to(COMPLETED):
            raise InvalidState(f"Cannot complete a campaign that is {campaign.status}.")

        campaign.status = COMPLETED
        campaign.completed_at = now or utcnow()
        self.session.commit()
        logger.info(f"campaign_completed: campaign_id={campaign.id}")
        return campaign

    # ---------- time-based transitions ---------- #

    def launch_due(self, now: datetime | None = None):
        """Launch scheduled campaigns whose start time has passed."""
        now = now or utcnow()
        due = (
            self.session.query(Campaign.id)
            .filter(Campaign.status == SCHEDULED, Campaign.scheduled_at <= now)
            .order_by(Campaign.scheduled_at.asc())
            .all()
        )
        launched = []
        for row in due:
            try:
                launched.append(self.launch(row.id, now=now))
            except SecureGuardError as e:
                logger.warning(f"scheduled_launch_failed: campaign_id={row.id}, error={e.message}")
        return launched

    def complete_expired(self, now: datetime | None = None):
        """Complete active campaigns whose end time has passed."""
        now = now or utcnow()
        expired = (
            self.session.query(Campaign.id)
            .filter(Campaign.status == ACTIVE, Campaign.ends_at.isnot(None), Campaign.ends_at <= now)
            .all()
        )
        return [self.complete(row.id, now=now) for row in expired]

    # ---------- outbox ---------- #

    def render_messages(self, campaign_id: int, base_url: str):
        """Per-recipient messages for an external delivery system."""
        campaign = self.get(campaign_id)
        if campaign.launched_at is None:
            raise InvalidState(f"Campaign {campaign.id} has not been launched yet.")

        base = base_url.rstrip("/")
        messages = []
        for r in campaign.recipients:
            tracking_url = f"{base}/track/{campaign.id}/{r.token}"
            message = render_content(campaign.template_snapshot, tracking_url)
            message.update(
                recipient_id=r.id,
                to=r.user.email,
                to_name=r.user.full_name,
                tracking_url=tracking_url,
            )
            messages.append(message)
        return messages

    # ---------- tokens ---------- #

    def _issue_tokens(self, count: int):
        """Generate `count` tokens not present in the global token index."""
        tokens = set()
        for _ in range(self.max_token_attempts):
            candidates = {self.token_factory() for _ in range(count - len(tokens))} - tokens
            taken = {
                row.token
                for row in self.session.query(Recipient.token).filter(Recipient.token.in_(candidates))
            }
            if taken:
                logger.warning(f"tracking_token_collision: count={len(taken)}")
            tokens |= candidates - taken
            if len(tokens) == count:
                return list(tokens)
        raise TokenCollision(f"Could not issue {count} unique tracking tokens.")
