"""Tests for tenant scope injection over the storage adapter."""

import logging

import pytest

from chatdesk.auth.context import RequestContext
from chatdesk.auth.models import UserModel
from chatdesk.common.exceptions import (
    CrossTenantWriteError,
    TenantUnidentifiedError,
    ValidationError,
)
from chatdesk.history.models import ConversationModel, MessageModel, QueueEntryModel
from chatdesk.scoping.adapter import StorageAdapter, compile_filter, field_name
from chatdesk.scoping.scoped import ScopedStore, UnscopedStore, scrub_query, store_for
from chatdesk.tenants.models import TenantModel


class RecordingAdapter:
    """Stands in for the storage adapter and records every filter it receives."""

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []

    async def find(self, model, filter=None, **kwargs):
        self.calls.append(("find", dict(filter or {})))
        return []

    async def find_one(self, model, filter=None):
        self.calls.append(("find_one", dict(filter or {})))
        return None

    async def count(self, model, filter=None):
        self.calls.append(("count", dict(filter or {})))
        return 0

    async def insert(self, model, values):
        self.calls.append(("insert", dict(values)))
        return values

    async def update(self, model, filter, values):
        self.calls.append(("update", dict(filter or {})))
        self.calls.append(("update_values", dict(values)))
        return 1

    async def delete(self, model, filter):
        self.calls.append(("delete", dict(filter or {})))
        return 1

    async def aggregate(self, model, pipeline):
        self.calls.append(("aggregate", pipeline[0]["$match"]))
        return []


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture
def adapter():
    return RecordingAdapter()


@pytest.fixture
def store(adapter):
    return ScopedStore(adapter, "tenant-a", actor_id="user-1")


INJECTED = [
    {},
    {"tenantId": "tenant-b"},
    {"tenant_id": "tenant-b"},
    {"tenantId": "tenant-b", "status": "open"},
    {"tenant_id": {"$in": ["tenant-a", "tenant-b"]}},
    {"tenantId": {"$ne": "tenant-a"}, "agentId": "x"},
]


class TestIsolation:
    @pytest.mark.parametrize("filter", INJECTED)
    async def test_every_read_is_scoped(self, store, adapter, filter):
        await store.find(ConversationModel, filter)
        await store.find_one(ConversationModel, filter)
        await store.count(ConversationModel, filter)
        await store.delete(ConversationModel, filter)
        await store.aggregate(ConversationModel, [{"$match": filter}])
        for _, observed in adapter.calls:
            assert observed["tenant_id"] == "tenant-a"
            assert "tenantId" not in observed

    async def test_aggregate_without_match_gets_one(self, store, adapter):
        await store.aggregate(ConversationModel, [{"$group": {"_id": "$status"}}])
        assert adapter.calls == [("aggregate", {"tenant_id": "tenant-a"})]

    async def test_update_filter_scoped(self, store, adapter):
        await store.update(ConversationModel, {"tenantId": "tenant-b"}, {"status": "closed"})
        assert adapter.calls[0] == ("update", {"tenant_id": "tenant-a"})

    def test_scrub_query(self):
        assert scrub_query({"tenantId": "b", "tenant_id": "b", "status": "open"}) == {"status": "open"}

    def test_requires_tenant(self, adapter):
        with pytest.raises(TenantUnidentifiedError):
            ScopedStore(adapter, "")


class TestWrites:
    async def test_insert_injects_tenant(self, store, adapter):
        await store.insert(ConversationModel, {"subject": "hi"})
        assert adapter.calls == [("insert", {"subject": "hi", "tenant_id": "tenant-a"})]

    async def test_insert_same_tenant_allowed(self, store, adapter):
        await store.insert(ConversationModel, {"subject": "hi", "tenantId": "tenant-a"})
        assert adapter.calls[0][1]["tenant_id"] == "tenant-a"

    @pytest.mark.parametrize("key", ["tenantId", "tenant_id"])
    async def test_cross_tenant_insert_refused(self, store, adapter, key):
        with pytest.raises(CrossTenantWriteError) as exc:
            await store.insert(ConversationModel, {"subject": "hi", key: "tenant-b"})
        assert exc.value.code == "CROSS_TENANT_WRITE_DENIED"
        assert adapter.calls == []

    async def test_cross_tenant_update_refused(self, store, adapter):
        with pytest.raises(CrossTenantWriteError):
            await store.update(ConversationModel, {"id": "c1"}, {"tenantId": "tenant-b"})
        assert adapter.calls == []

    async def test_update_with_only_own_tenant_is_noop(self, store, adapter):
        assert await store.update(ConversationModel, {"id": "c1"}, {"tenantId": "tenant-a"}) == 0
        assert adapter.calls == []


class TestUnscoped:
    async def test_reads_pass_through_and_audit(self, adapter):
        audit = logging.getLogger("chatdesk.scoping.audit")
        handler = ListHandler()
        previous = audit.level
        audit.addHandler(handler)
        audit.setLevel(logging.INFO)
        try:
            await UnscopedStore(adapter, actor_id="root").find(ConversationModel, {"status": "open"})
        finally:
            audit.removeHandler(handler)
            audit.setLevel(previous)
        assert adapter.calls == [("find", {"status": "open"})]
        assert [r.getMessage() for r in handler.records] == ["Unscoped find on conversations"]
        assert handler.records[0].user_id == "root"

    async def test_insert_requires_tenant(self, adapter):
        store = UnscopedStore(adapter, actor_id="root")
        with pytest.raises(ValidationError):
            await store.insert(ConversationModel, {"subject": "x"})
        await store.insert(ConversationModel, {"subject": "x", "tenantId": "tenant-b"})

    async def test_tenant_cannot_be_rewritten(self, adapter):
        store = UnscopedStore(adapter, actor_id="root")
        with pytest.raises(ValidationError):
            await store.update(ConversationModel, {"id": "c1"}, {"tenant_id": "tenant-c"})


class TestStoreFor:
    def _ctx(self, role, tenant_id=None, master_scope=None):
        user = UserModel(id="u", role=role, tenant_id=tenant_id, email="u@x.io", name="u", password_hash="!")
        tenant = TenantModel(id=tenant_id, slug="t", name="T") if tenant_id else None
        return RequestContext(user=user, tenant=tenant, is_master=role == "master", master_scope=master_scope)

    def test_tenant_user_gets_scoped(self):
        store = store_for(self._ctx("agent", "tenant-a"), session=None, adapter=RecordingAdapter())
        assert store.scoped and store.tenant_id == "tenant-a"

    def test_master_gets_unscoped(self):
        store = store_for(self._ctx("master"), session=None, adapter=RecordingAdapter())
        assert not store.scoped

    def test_master_with_scope(self):
        store = store_for(self._ctx("master", master_scope="tenant-b"), session=None, adapter=RecordingAdapter())
        assert store.scoped and store.tenant_id == "tenant-b"

    def test_no_tenant(self):
        with pytest.raises(TenantUnidentifiedError):
            store_for(self._ctx("agent"), session=None, adapter=RecordingAdapter())


class TestAdapter:
    def test_field_name(self):
        assert field_name("agentId") == "agent_id"
        assert field_name("created_at") == "created_at"

    def test_unknown_field(self):
        with pytest.raises(ValidationError):
            compile_filter(ConversationModel, {"password": "x"})

    def test_unknown_operator(self):
        with pytest.raises(ValidationError):
            compile_filter(ConversationModel, {"status": {"$regex": "o.*"}})


class TestAgainstDatabase:
    async def test_two_tenants_never_see_each_other(self, db):
        async with db.get_session() as session:
            a = ScopedStore(StorageAdapter(session), "tenant-a")
            b = ScopedStore(StorageAdapter(session), "tenant-b")
            for subject in ("one", "two"):
                await a.insert(ConversationModel, {"subject": subject})
            await b.insert(ConversationModel, {"subject": "three"})
            await a.insert(QueueEntryModel, {"conversation_id": "c1", "priority": 1})

        async with db.get_session() as session:
            a = ScopedStore(StorageAdapter(session), "tenant-a")
            b = ScopedStore(StorageAdapter(session), "tenant-b")
            assert {c.subject for c in await a.find(ConversationModel, {"tenantId": "tenant-b"})} == {"one", "two"}
            assert await b.count(ConversationModel) == 1
            assert await b.count(QueueEntryModel) == 0
            theirs = (await b.find(ConversationModel))[0]
            assert await a.get(ConversationModel, theirs.id) is None
            assert await a.update(ConversationModel, {"id": theirs.id}, {"status": "closed"}) == 0
            assert await a.delete(ConversationModel, {"id": theirs.id}) == 0

    async def test_increment_applies_to_stored_value(self, db):
        async with db.get_session() as session:
            conv = await ScopedStore(StorageAdapter(session), "tenant-a").insert(
                ConversationModel, {"subject": "x", "messageCount": 1}
            )

        async with db.get_session() as stale:
            a = ScopedStore(StorageAdapter(stale), "tenant-a")
            assert (await a.get(ConversationModel, conv.id)).message_count == 1
            async with db.get_session() as session:
                b = ScopedStore(StorageAdapter(session), "tenant-a")
                await b.update(ConversationModel, {"id": conv.id}, {"$inc": {"messageCount": 1}})
            assert await a.update(ConversationModel, {"id": conv.id}, {"$inc": {"messageCount": 1}}) == 1

        async with db.get_session() as session:
            fresh = await ScopedStore(StorageAdapter(session), "tenant-a").get(ConversationModel, conv.id)
        assert fresh.message_count == 3

    async def test_increment_unknown_field(self, db):
        async with db.get_session() as session:
            a = ScopedStore(StorageAdapter(session), "tenant-a")
            with pytest.raises(ValidationError):
                await a.update(ConversationModel, {"id": "c1"}, {"$inc": {"hits": 1}})

    async def test_aggregate_grouped_counts(self, db):
        async with db.get_session() as session:
            a = ScopedStore(StorageAdapter(session), "tenant-a")
            b = ScopedStore(StorageAdapter(session), "tenant-b")
            await a.insert(ConversationModel, {"subject": "x", "status": "open", "messageCount": 2})
            await a.insert(ConversationModel, {"subject": "y", "status": "closed", "messageCount": 3})
            await b.insert(ConversationModel, {"subject": "z", "status": "open", "messageCount": 7})
            rows = await a.aggregate(ConversationModel, [
                {"$group": {"_id": "$status", "count": {"$sum": 1}, "messages": {"$sum": "$messageCount"}}},
                {"$sort": {"count": -1}},
            ])
        assert {r["_id"]: (r["count"], r["messages"]) for r in rows} == {"open": (1, 2), "closed": (1, 3)}

    async def test_operators(self, db):
        async with db.get_session() as session:
            a = ScopedStore(StorageAdapter(session), "tenant-a")
            for status in ("open", "pending", "closed"):
                await a.insert(ConversationModel, {"subject": status, "status": status})
            await a.insert(MessageModel, {"conversationId": "c", "body": "hello"})
            found = await a.find(ConversationModel, {"status": {"$in": ["open", "pending"]}}, sort=[("subject", 1)])
            assert [c.subject for c in found] == ["open", "pending"]
            assert await a.count(ConversationModel, {"status": {"$ne": "closed"}}) == 2
            assert await a.count(MessageModel, {"conversationId": "c"}) == 1
