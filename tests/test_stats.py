import pytest

from secureguard.errors import CampaignNotFound, EmptyTargetGroup, TemplateInUse
from secureguard.models import utcnow
from secureguard.stats import click_rate


def test_click_rate_never_divides_by_zero():
    assert click_rate(0, 0) == 0.0
    assert click_rate(1, 4) == 0.25


def test_scenario_single_user_campaign(registry, recorder, stats, make_user, make_template):
    make_user("alice", group="alice-team", email="alice@co.com")
    t1 = make_template("T1")
    c1 = registry.create_campaign("C1", t1.id, "alice-team")
    c1 = registry.launch(c1.id)

    assert stats.campaign_stats(c1.id) == {"sent": 1, "clicked": 0, "click_rate": 0.0}

    token = c1.recipients[0].token
    recorder.record_click(token)
    assert stats.campaign_stats(c1.id) == {"sent": 1, "clicked": 1, "click_rate": 1.0}

    recorder.record_click(token)
    assert stats.campaign_stats(c1.id) == {"sent": 1, "clicked": 1, "click_rate": 1.0}


def test_scenario_empty_target_group(registry, identity, make_user, make_template):
    t1 = make_template()
    with pytest.raises(EmptyTargetGroup):
        registry.create_campaign("C1", t1.id, "Nobody")

    # Group emptied between creation and launch
    bob = make_user("bob", group="Sales")
    campaign = registry.create_campaign("C2", t1.id, "Sales")
    identity.deactivate(bob)
    with pytest.raises(EmptyTargetGroup):
        registry.launch(campaign.id)


def test_scenario_template_delete(registry, catalog, make_user, make_template):
    make_user("alice", group="Sales")
    t1 = make_template()
    campaign = registry.launch(registry.create_campaign("C1", t1.id, "Sales").id)

    with pytest.raises(TemplateInUse):
        catalog.delete(t1.id)

    registry.cancel(campaign.id)
    catalog.delete(t1.id)
    assert catalog.get(t1.id) is None


def test_cancel_keeps_tokens_valid(registry, recorder, stats, make_user, make_template):
    make_user("alice", group="Sales")
    campaign = registry.launch(registry.create_campaign("C1", make_template().id, "Sales").id)
    token = campaign.recipients[0].token
    registry.cancel(campaign.id)

    recorder.record_click(token)
    assert stats.campaign_stats(campaign.id)["clicked"] == 1


def test_draft_campaign_has_no_sends(registry, stats, make_user, make_template):
    make_user("alice", group="Sales")
    campaign = registry.create_campaign("C1", make_template().id, "Sales")
    assert stats.campaign_stats(campaign.id) == {"sent": 0, "clicked": 0, "click_rate": 0.0}


def test_missing_campaign(stats):
    with pytest.raises(CampaignNotFound):
        stats.campaign_stats(1)
    with pytest.raises(CampaignNotFound):
        stats.per_group_breakdown(1)


@pytest.fixture
def org(registry, recorder, make_user, make_template):
    """Two groups, one campaign to everyone, two clicks out of four."""
    users = [
        make_user("alice", group="Sales"),
        make_user("bob", group="Sales"),
        make_user("carol", group="Engineering"),
        make_user("dave"),
    ]
    template = make_template()
    make_template("Suspicious Invoice", category="spear-phishing")
    campaign = registry.launch(registry.create_campaign("All hands", template.id, "*").id)
    by_name = {r.user.username: r.token for r in campaign.recipients}
    recorder.record_click(by_name["alice"])
    recorder.record_click(by_name["carol"])
    recorder.record_click(by_name["carol"])
    return campaign, users


def test_per_group_breakdown(stats, org):
    campaign, _ = org
    assert stats.per_group_breakdown(campaign.id) == {
        "Engineering": {"sent": 1, "clicked": 1},
        "Sales": {"sent": 2, "clicked": 1},
        "Unassigned": {"sent": 1, "clicked": 0},
    }


def test_breakdown_uses_group_at_launch(identity, stats, org):
    campaign, users = org
    identity.update(users[0], group="Finance")
    assert "Finance" not in stats.per_group_breakdown(campaign.id)


def test_organization_stats(registry, stats, org, make_user):
    make_user("erin", group="Sales")
    registry.create_campaign("Draft one", org[0].template_id, "Sales")

    assert stats.organization_stats() == {
        "total_users": 5,
        "active_campaigns": 1,
        "overall_click_rate": 0.5,
        "total_templates": 2,
    }


def test_organization_stats_empty(stats):
    assert stats.organization_stats() == {
        "total_users": 0,
        "active_campaigns": 0,
        "overall_click_rate": 0.0,
        "total_templates": 0,
    }


def test_clicked_never_exceeds_sent(registry, stats, org):
    for entry in stats.campaign_overview():
        assert entry["stats"]["clicked"] <= entry["stats"]["sent"]
        assert entry["stats"]["sent"] == len(registry.get(entry["id"]).recipients)


def test_campaign_overview(registry, stats, org):
    draft = registry.create_campaign("Draft one", org[0].template_id, "Sales")
    overview = stats.campaign_overview()

    assert [c["id"] for c in overview] == [draft.id, org[0].id]
    assert overview[0]["stats"] == {"sent": 0, "clicked": 0, "click_rate": 0.0}
    assert overview[1]["stats"] == {"sent": 4, "clicked": 2, "click_rate": 0.5}


def test_click_timeline(stats, org):
    assert stats.click_timeline() == [{"day": utcnow().date().isoformat(), "clicks": 2}]
    assert stats.click_timeline(campaign_id=org[0].id + 1) == []


def test_user_history(stats, org):
    _, users = org
    history = stats.user_history(users[2].id)
    assert history["total_delivered"] == 1
    assert history["total_clicked"] == 1
    assert history["click_rate"] == 1.0
    assert history["events"][0]["campaign_name"] == "All hands"
    assert history["events"][0]["click_count"] == 2


def test_export_rows(stats, org):
    rows = stats.export_rows(org[0].id)
    assert sorted(r.recipient_email for r in rows) == ["alice@co.com", "bob@co.com", "carol@co.com", "dave@co.com"]
    assert sum(1 for r in rows if r.clicked_at) == 2


def test_group_named_unassigned_merges_with_ungrouped(registry, stats, make_user, make_template):
    make_user("alice", group="Unassigned")
    make_user("bob")
    campaign = registry.launch(registry.create_campaign("C1", make_template().id, "*").id)

    groups = stats.per_group_breakdown(campaign.id)
    assert groups == {"Unassigned": {"sent": 2, "clicked": 0}}
    assert sum(g["sent"] for g in groups.values()) == stats.campaign_stats(campaign.id)["sent"]
