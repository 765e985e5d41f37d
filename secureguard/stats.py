"""
Statistics aggregator.

Every figure is derived from the recipient rows at query time; there are
no stored counters to drift out of sync with the click state.
"""

from sqlalchemy import case, func

from .errors import CampaignNotFound
from .models import ACTIVE, Campaign, Recipient, Template, User

UNASSIGNED = "Unassigned"


def click_rate(clicked: int, sent: int) -> float:
    return clicked / sent if sent else 0.0


def _clicked_sum():
    return func.coalesce(func.sum(case((Recipient.clicked_at.isnot(None), 1), else_=0)), 0)


class StatsAggregator:

    def __init__(self, session):
        self.session = session

    def _require_campaign(self, campaign_id):
        campaign = self.session.get(Campaign, campaign_id)
        if campaign is None:
            raise CampaignNotFound(f"Campaign {campaign_id} not found.")
        return campaign

    def campaign_stats(self, campaign_id: int) -> dict:
        self._require_campaign(campaign_id)
        sent, clicked = (
            self.session.query(func.count(Recipient.id), _clicked_sum())
            .filter(Recipient.campaign_id == campaign_id)
            .one()
        )
        sent, clicked = int(sent), int(clicked)
        return {"sent": sent, "clicked": clicked, "click_rate": click_rate(clicked, sent)}

    def organization_stats(self) -> dict:
        total_users = self.session.query(func.count(User.id)).filter(User.is_active.is_(True)).scalar()
        active_campaigns = self.session.query(func.count(Campaign.id)).filter(Campaign.status == ACTIVE).scalar()
        total_templates = self.session.query(func.count(Template.id)).scalar()
        sent, clicked = self.session.query(func.count(Recipient.id), _clicked_sum()).one()
        sent, clicked = int(sent), int(clicked)

        return {
            "total_users": total_users or 0,
            "active_campaigns": active_campaigns or 0,
            "overall_click_rate": click_rate(clicked, sent),
            "total_templates": total_templates or 0,
        }

    def per_group_breakdown(self, campaign_id: int) -> dict:
        self._require_campaign(campaign_id)
        rows = (
            self.session.query(
                Recipient.group,
                func.count(Recipient.id).label("sent"),
                _clicked_sum().label("clicked"),
            )
            .filter(Recipient.campaign_id == campaign_id)
            .group_by(Recipient.group)
            .order_by(Recipient.group)
            .all()
        )
        breakdown = {}
        for r in rows:
            # Ungrouped recipients share the bucket with a group literally named Unassigned
            entry = breakdown.setdefault(r.group or UNASSIGNED, {"sent": 0, "clicked": 0})
            entry["sent"] += int(r.sent)
            entry["clicked"] += int(r.clicked)
        return breakdown

    def campaign_overview(self) -> list[dict]:
        """Every campaign with its live stats, newest first."""
        rows = (
            self.session.query(
                Campaign,
                func.count(Recipient.id).label("sent"),
                _clicked_sum().label("clicked"),
            )
            .outerjoin(Recipient, Recipient.campaign_id == Campaign.id)
            .group_by(Campaign.id)
            .order_by(Campaign.id.desc())
            .all()
        )
        overview = []
        for campaign, sent, clicked in rows:
            clicked = int(clicked)
            stats = {"sent": sent, "clicked": clicked, "click_rate": click_rate(clicked, sent)}
            overview.append(campaign.to_dict(stats=stats))
        return overview

    def click_timeline(self, campaign_id: int | None = None) -> list[dict]:
        """First clicks per day."""
        day = func.date(Recipient.clicked_at)
        query = (
            self.session.query(day.label("day"), func.count(Recipient.id).label("clicks"))
            .filter(Recipient.clicked_at.isnot(None))
        )
        if campaign_id is not None:
            query = query.filter(Recipient.campaign_id == campaign_id)
        rows = query.group_by(day).order_by(day).all()
        # func.date comes back as a string on SQLite and a date elsewhere
        return [{"day": str(r.day), "clicks": r.clicks} for r in rows]

    def user_history(self, user_id: int) -> dict:
        rows = (
            self.session.query(Recipient, Campaign.name.label("campaign_name"))
            .join(Campaign, Campaign.id == Recipient.campaign_id)
            .filter(Recipient.user_id == user_id)
            .order_by(Recipient.delivered_at.desc(), Recipient.id.desc())
            .all()
        )
        entries = []
        for r, campaign_name in rows:
            entry = r.to_dict()
            entry["campaign_name"] = campaign_name
            entries.append(entry)

        delivered = len(entries)
        clicked = sum(1 for r, _ in rows if r.clicked)
        return {
            "total_delivered": delivered,
            "total_clicked": clicked,
            "click_rate": click_rate(clicked, delivered),
            "events": entries,
        }

    def export_rows(self, campaign_id: int | None = None):
        query = (
            self.session.query(
                Recipient.id.label("recipient_id"),
                Campaign.id.label("cid"),
                Campaign.name.label("campaign_name"),
                User.email.label("recipient_email"),
                Recipient.group,
                Recipient.delivered_at,
                Recipient.clicked_at,
                Recipient.click_count,
                Recipient.clicked_ip,
            )
            .join(Campaign, Campaign.id == Recipient.campaign_id)
            .join(User, User.id == Recipient.user_id)
        )
        if campaign_id:
            query = query.filter(Recipient.campaign_id == campaign_id)
        return query.order_by(Recipient.id.desc()).all()
