import threading

import pytest

from secureguard.db import db
from secureguard.models import Recipient
from secureguard.tracking import AlreadyClicked, FirstClick, TokenNotFound, TrackingRecorder


@pytest.fixture
def launched(registry, make_user, make_template):
    make_user("alice", group="Sales")
    make_user("bob", group="Sales")
    template = make_template()
    campaign = registry.create_campaign("C1", template.id, "Sales")
    return registry.launch(campaign.id)


def _recipient(campaign, username):
    return next(r for r in campaign.recipients if r.user.username == username)


def test_first_click_then_already_clicked(recorder, launched):
    alice = _recipient(launched, "alice")
    token, user_id, campaign_id = alice.token, alice.user_id, launched.id

    assert recorder.record_click(token, ip="10.0.0.1", user_agent="Mozilla/5.0") == FirstClick(campaign_id, user_id)
    first = db.session.get(Recipient, alice.id)
    clicked_at = first.clicked_at
    assert clicked_at is not None
    assert first.click_count == 1
    assert first.clicked_ip == "10.0.0.1"

    assert recorder.record_click(token, ip="10.0.0.2") == AlreadyClicked(campaign_id, user_id)
    again = db.session.get(Recipient, alice.id)
    assert again.clicked_at == clicked_at
    assert again.click_count == 2
    assert again.clicked_ip == "10.0.0.1"


def test_click_does_not_touch_other_recipients(recorder, launched):
    recorder.record_click(_recipient(launched, "alice").token)
    bob = db.session.get(Recipient, _recipient(launched, "bob").id)
    assert bob.clicked_at is None
    assert bob.click_count == 0


def test_unknown_token(recorder, launched):
    assert recorder.record_click("no-such-token") == TokenNotFound("no-such-token")
    assert isinstance(recorder.record_click(""), TokenNotFound)


def test_campaign_mismatch_is_not_found(recorder, launched):
    token = _recipient(launched, "alice").token
    assert isinstance(recorder.record_click(token, campaign_id=launched.id + 1), TokenNotFound)
    assert isinstance(recorder.record_click(token, campaign_id=launched.id), FirstClick)


def test_clicks_recorded_after_cancel(registry, recorder, launched):
    token = _recipient(launched, "alice").token
    registry.cancel(launched.id)
    assert isinstance(recorder.record_click(token), FirstClick)


def test_clicks_recorded_after_complete(registry, recorder, launched):
    token = _recipient(launched, "alice").token
    registry.complete(launched.id)
    assert isinstance(recorder.record_click(token), FirstClick)


def test_long_user_agent_is_truncated(recorder, launched):
    alice = _recipient(launched, "alice")
    recorder.record_click(alice.token, user_agent="x" * 1000)
    assert len(db.session.get(Recipient, alice.id).clicked_user_agent) == 255


def test_concurrent_duplicate_clicks_yield_one_first_click(app, launched):
    alice = _recipient(launched, "alice")
    token, recipient_id = alice.token, alice.id
    db.session.commit()

    hits = 8
    barrier = threading.Barrier(hits)
    outcomes = []
    errors = []
    lock = threading.Lock()

    def hit():
        try:
            with app.app_context():
                barrier.wait()
                outcome = TrackingRecorder(db.session).record_click(token)
            with lock:
                outcomes.append(outcome)
        except Exception as e:
            with lock:
                errors.append(e)

    threads = [threading.Thread(target=hit) for _ in range(hits)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert sum(isinstance(o, FirstClick) for o in outcomes) == 1
    assert sum(isinstance(o, AlreadyClicked) for o in outcomes) == hits - 1

    db.session.expire_all()
    recipient = db.session.get(Recipient, recipient_id)
    assert recipient.click_count == hits
    assert recipient.clicked_at is not None
