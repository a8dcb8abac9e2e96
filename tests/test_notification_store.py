"""Notification store: persistence, queries, read state and delivery status."""

from datetime import datetime, timedelta, timezone

import pytest

from app.models.notification import DeliveryStatus, NotificationChannel
from app.schemas import NotificationCreate, NotificationFilter
from app.services.notification_store import NotificationOwnershipError, NotificationStore

IN_APP = NotificationChannel.IN_APP
EMAIL = NotificationChannel.EMAIL
WEBHOOK = NotificationChannel.WEBHOOK


def _data(user_id="u1", type_="CANDIDATE_APPLIED", **kw):
    return NotificationCreate(user_id=user_id, type=type_, title=kw.pop("title", "Title"), **kw)


def test_store_class_keeps_builtin_list_usable():
    # A method named `list` on the class breaks `list[str]` annotations below it
    assert not hasattr(NotificationStore, "list")
    assert NotificationStore.mark_many_read.__annotations__["notification_ids"] == list[str]
    assert NotificationStore.delete_many.__annotations__["notification_ids"] == list[str]


@pytest.mark.asyncio
async def test_create_derives_classification_and_pending_deliveries(store):
    n = await store.create(_data(type_="SECURITY_ALERT", data={"ip": "10.0.0.1"}), [EMAIL, IN_APP, IN_APP])
    assert n.category == "SECURITY_ALERTS"
    assert n.priority == "CRITICAL"
    assert n.channel_list == ["in_app", "email"]
    assert n.data_dict == {"ip": "10.0.0.1"}
    assert set(n.delivery_status) == {"in_app", "email"}
    for entry in n.delivery_status.values():
        assert entry["status"] == "pending"
        assert entry["retry_count"] == 0


@pytest.mark.asyncio
async def test_create_keeps_explicit_priority(store):
    n = await store.create(_data(type_="JOB_POSTED", priority="HIGH"), [IN_APP])
    assert n.priority == "HIGH"
    assert n.category == "HR_ACTIVITIES"


@pytest.mark.asyncio
async def test_create_requires_a_channel(store):
    with pytest.raises(ValueError):
        await store.create(_data(), [])


@pytest.mark.asyncio
async def test_list_paginates_and_scopes_to_user(store):
    for i in range(5):
        await store.create(_data(title=f"n{i}"), [IN_APP])
    await store.create(_data(user_id="u2"), [IN_APP])

    page1 = await store.list_notifications(NotificationFilter(user_id="u1", limit=2))
    assert page1.total_count == 5
    assert len(page1.items) == 2
    assert page1.has_more is True

    page3 = await store.list_notifications(NotificationFilter(user_id="u1", limit=2, page=3))
    assert len(page3.items) == 1
    assert page3.has_more is False

    ids = {n.id for p in (1, 2, 3) for n in (await store.list_notifications(NotificationFilter(user_id="u1", limit=2, page=p))).items}
    assert len(ids) == 5


@pytest.mark.asyncio
async def test_list_filters(store):
    await store.create(_data(type_="JOB_POSTED"), [IN_APP])
    await store.create(_data(type_="SECURITY_ALERT"), [IN_APP])
    await store.create(_data(type_="COMMENT_MENTION", source_id="c1", source_type="comment"), [IN_APP])

    by_cat = await store.list_notifications(NotificationFilter(user_id="u1", category="SECURITY_ALERTS"))
    assert [n.type for n in by_cat.items] == ["SECURITY_ALERT"]

    by_types = await store.list_notifications(NotificationFilter(user_id="u1", type=["JOB_POSTED", "COMMENT_MENTION"]))
    assert by_types.total_count == 2

    by_source = await store.list_notifications(NotificationFilter(user_id="u1", source_id="c1"))
    assert by_source.items[0].source_type == "comment"


@pytest.mark.asyncio
async def test_list_sorted_by_priority(store):
    await store.create(_data(type_="COMMENT_EDITED"), [IN_APP])  # LOW
    await store.create(_data(type_="EMERGENCY_ALERT"), [IN_APP])  # CRITICAL
    await store.create(_data(type_="CANDIDATE_APPLIED"), [IN_APP])
    page = await store.list_notifications(NotificationFilter(user_id="u1", sort_by="priority", sort_order="desc"))
    assert page.items[0].priority == "CRITICAL"
    assert page.items[-1].priority == "LOW"


@pytest.mark.asyncio
async def test_expired_hidden_unless_requested(store):
    past = datetime.now(timezone.utc) - timedelta(hours=1)
    future = datetime.now(timezone.utc) + timedelta(days=1)
    await store.create(_data(title="old", expires_at=past), [IN_APP])
    await store.create(_data(title="fresh", expires_at=future), [IN_APP])
    await store.create(_data(title="forever"), [IN_APP])

    visible = await store.list_notifications(NotificationFilter(user_id="u1"))
    assert {n.title for n in visible.items} == {"fresh", "forever"}
    everything = await store.list_notifications(NotificationFilter(user_id="u1", include_expired=True))
    assert everything.total_count == 3
    assert await store.unread_count("u1") == 2

    assert await store.delete_expired() == 1
    assert (await store.list_notifications(NotificationFilter(user_id="u1", include_expired=True))).total_count == 2


@pytest.mark.asyncio
async def test_mark_read_is_idempotent(store):
    n = await store.create(_data(), [IN_APP])
    assert await store.mark_read(n.id, "u1") is True
    first = await store.get(n.id)
    assert first.is_read is True
    assert first.read_at is not None

    assert await store.mark_read(n.id, "u1") is False
    second = await store.get(n.id)
    assert second.read_at == first.read_at


@pytest.mark.asyncio
async def test_mark_read_other_user_is_noop(store):
    n = await store.create(_data(), [IN_APP])
    assert await store.mark_read(n.id, "u2") is False
    assert (await store.get(n.id)).is_read is False


@pytest.mark.asyncio
async def test_mark_read_moves_in_app_to_read(store):
    n = await store.create(_data(), [IN_APP, EMAIL])
    await store.update_delivery_status(n.id, IN_APP, DeliveryStatus.DELIVERED)
    await store.mark_read(n.id, "u1")
    status = (await store.get(n.id)).delivery_status
    assert status["in_app"]["status"] == "read"
    assert status["in_app"]["read_at"] is not None
    assert status["email"]["status"] == "pending"


@pytest.mark.asyncio
async def test_mark_all_read(store):
    for _ in range(3):
        await store.create(_data(), [IN_APP])
    other = await store.create(_data(user_id="u2"), [IN_APP])
    assert await store.mark_all_read("u1") == 3
    assert await store.unread_count("u1") == 0
    assert (await store.get(other.id)).is_read is False
    assert await store.mark_all_read("u1") == 0


@pytest.mark.asyncio
async def test_archive(store):
    n = await store.create(_data(), [IN_APP])
    assert await store.archive(n.id, "u1") is True
    assert await store.archive(n.id, "u1") is False
    archived = await store.get(n.id)
    assert archived.is_archived is True
    assert archived.archived_at is not None
    assert (await store.list_notifications(NotificationFilter(user_id="u1", is_archived=False))).total_count == 0


@pytest.mark.asyncio
async def test_delete_many_checks_every_id(store):
    mine = [await store.create(_data(), [IN_APP]) for _ in range(2)]
    theirs = await store.create(_data(user_id="u2"), [IN_APP])

    with pytest.raises(NotificationOwnershipError) as exc:
        await store.delete_many([mine[0].id, theirs.id], "u1")
    assert exc.value.notification_ids == [theirs.id]
    # Nothing removed on rejection
    assert await store.get(mine[0].id) is not None

    assert await store.delete_many([n.id for n in mine], "u1") == 2
    assert await store.get(mine[0].id) is None
    assert await store.get(theirs.id) is not None


@pytest.mark.asyncio
async def test_delete_single(store):
    n = await store.create(_data(), [IN_APP])
    assert await store.delete(n.id, "u2") is False
    assert await store.delete(n.id, "u1") is True
    assert await store.get(n.id) is None


@pytest.mark.asyncio
async def test_summary(store):
    await store.create(_data(type_="SECURITY_ALERT"), [IN_APP])
    read = await store.create(_data(type_="JOB_POSTED"), [IN_APP])
    await store.create(_data(type_="JOB_CLOSED"), [IN_APP])
    await store.mark_read(read.id, "u1")

    summary = await store.summary("u1")
    assert summary.total_count == 3
    assert summary.unread_count == 2
    assert summary.count_by_category["HR_ACTIVITIES"] == 2
    assert summary.count_by_category["SECURITY_ALERTS"] == 1
    assert summary.count_by_category["COMMENTS"] == 0
    assert summary.count_by_priority["CRITICAL"] == 1


@pytest.mark.asyncio
async def test_delivery_status_transitions(store):
    n = await store.create(_data(), [WEBHOOK, EMAIL])

    assert await store.update_delivery_status(n.id, EMAIL, DeliveryStatus.SENT) is True
    assert await store.update_delivery_status(n.id, EMAIL, DeliveryStatus.DELIVERED) is True
    # delivered -> failed is not a legal move
    assert await store.update_delivery_status(n.id, EMAIL, DeliveryStatus.FAILED) is False

    assert await store.update_delivery_status(
        n.id, WEBHOOK, DeliveryStatus.FAILED, error="HTTP 503", retry_count=3
    ) is True
    assert await store.update_delivery_status(n.id, WEBHOOK, DeliveryStatus.DELIVERED) is False

    status = (await store.get(n.id)).delivery_status
    assert status["email"]["status"] == "delivered"
    assert status["email"]["sent_at"] is not None
    assert status["webhook"]["status"] == "failed"
    assert status["webhook"]["error"] == "HTTP 503"
    assert status["webhook"]["retry_count"] == 3


@pytest.mark.asyncio
async def test_delivery_status_for_unrouted_channel(store):
    n = await store.create(_data(), [IN_APP])
    assert await store.update_delivery_status(n.id, WEBHOOK, DeliveryStatus.DELIVERED) is False
