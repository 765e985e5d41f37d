"""
Tracking event recorder.

A click is recorded with a single conditional UPDATE on the recipient row
(`clicked_at IS NULL`), so duplicate hits on the same token, whether
replayed, prefetched by a mail scanner or fired concurrently, produce
exactly one first click. Later hits only bump the audit counter.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import select, update

from .models import Recipient, utcnow

logger = logging.getLogger(__name__)

# Column limits on Recipient
MAX_IP_LENGTH = 45
MAX_USER_AGENT_LENGTH = 255


@dataclass(frozen=True)
class FirstClick:
    campaign_id: int
    user_id: int


@dataclass(frozen=True)
class AlreadyClicked:
    campaign_id: int
    user_id: int


@dataclass(frozen=True)
class TokenNotFound:
    token: str


class TrackingRecorder:

    def __init__(self, session):
        self.session = session

    def record_click(self, token: str, ip: str | None = None, user_agent: str | None = None,
                     campaign_id: int | None = None):
        """Record a hit on a tracking token and say whether it was the first."""
        if not token:
            return TokenNotFound(token)

        match = Recipient.token == token
        if campaign_id is not None:
            match = match & (Recipient.campaign_id == campaign_id)

        try:
            first = self.session.execute(
                update(Recipient)
                .where(match, Recipient.clicked_at.is_(None))
                .values(
                    clicked_at=utcnow(),
                    click_count=Recipient.click_count + 1,
                    clicked_ip=(ip or None) and ip[:MAX_IP_LENGTH],
                    clicked_user_agent=(user_agent or None) and user_agent[:MAX_USER_AGENT_LENGTH],
                )
                .execution_options(synchronize_session=False)
            ).rowcount

            if not first:
                repeat = self.session.execute(
                    update(Recipient)
                    .where(match)
                    .values(click_count=Recipient.click_count + 1)
                    .execution_options(synchronize_session=False)
                ).rowcount
                if not repeat:
                    self.session.rollback()
                    logger.info("tracking_token_not_found")
                    return TokenNotFound(token)

            row = self.session.execute(
                select(Recipient.campaign_id, Recipient.user_id).where(match)
            ).one()
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        if first:
            logger.info(f"click_recorded: campaign_id={row.campaign_id}, user_id={row.user_id}")
            return FirstClick(row.campaign_id, row.user_id)

        logger.info(f"click_repeated: campaign_id={row.campaign_id}, user_id={row.user_id}")
        return AlreadyClicked(row.campaign_id, row.user_id)
