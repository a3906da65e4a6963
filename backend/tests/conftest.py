import copy
import uuid
import datetime as dt
from collections import Counter, deque
from concurrent.futures import Executor, Future
from functools import cmp_to_key
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from google.api_core import exceptions as gcp_exceptions
from google.cloud import firestore

from crm_admin.cache import QueryCache
from crm_admin.errors import UnauthenticatedError
from crm_admin.main import app, get_auth, get_identity, get_services
from crm_admin.manager import FirestoreManager
from crm_admin.retry import RetryQueue
from crm_admin.sanitizer import DataSanitizer
from crm_admin.services import build_services
from crm_admin.settings import Settings


# -------------------------
# Time
# -------------------------
class FakeClock:
    def __init__(self, start: dt.datetime = dt.datetime(2026, 5, 4, 12, 0, tzinfo=dt.timezone.utc)):
        self.current = start.timestamp()

    def __call__(self) -> float:
        return self.current

    def now(self) -> dt.datetime:
        return dt.datetime.fromtimestamp(self.current, tz=dt.timezone.utc)

    def advance(self, seconds: float) -> None:
        self.current += seconds


class InlineExecutor(Executor):
    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future


# -------------------------
# Firestore-like fakes
# -------------------------
def _compare(a, b) -> int:
    if a == b:
        return 0
    if a is None:
        return -1
    if b is None:
        return 1
    try:
        return -1 if a < b else 1
    except TypeError:
        return -1 if str(a) < str(b) else 1


def _matches(data: dict, field: str, op: str, value) -> bool:
    if field not in data:
        return False
    current = data[field]
    try:
        if op == "==":
            return current == value
        if op == "!=":
            return current != value
        if op == "<":
            return current < value
        if op == "<=":
            return current <= value
        if op == ">":
            return current > value
        if op == ">=":
            return current >= value
        if op == "in":
            return current in value
        if op == "not-in":
            return current not in value
        if op == "array_contains":
            return isinstance(current, list) and value in current
        if op == "array_contains_any":
            return isinstance(current, list) and any(v in current for v in value)
    except TypeError:
        return False
    raise NotImplementedError(f"FakeQuery does not support {op!r}")


class FakeSnapshot:
    def __init__(self, reference: "FakeDocRef", data: dict | None, update_time=None):
        self.reference = reference
        self.id = reference.id
        self._data = data
        self.exists = data is not None
        self.update_time = update_time

    def to_dict(self) -> dict | None:
        return copy.deepcopy(self._data) if self._data is not None else None


class FakeDocRef:
    def __init__(self, fs: "FakeFirestore", collection: str, doc_id: str):
        self._fs = fs
        self.collection_name = collection
        self.id = doc_id

    @property
    def path(self) -> str:
        return f"{self.collection_name}/{self.id}"

    def get(self, timeout=None, **kwargs):
        self._fs._tick("get")
        data = self._fs.data.get(self.collection_name, {}).get(self.id)
        return FakeSnapshot(self, data, self._fs.update_times.get(self.path))

    def set(self, document_data, merge=False, timeout=None, **kwargs):
        self._fs._tick("set")
        self._fs._set(self, document_data, merge)

    def update(self, field_updates, option=None, timeout=None, **kwargs):
        self._fs._tick("update")
        self._fs._update(self, field_updates, option)

    def delete(self, option=None, timeout=None, **kwargs):
        self._fs._tick("delete")
        self._fs._delete(self)


class FakeWatch:
    def __init__(self, fs: "FakeFirestore", query: "FakeQuery", callback):
        self._fs = fs
        self.query = query
        self.callback = callback
        self.active = True

    def unsubscribe(self):
        self.active = False

    def fire(self):
        if self.active:
            self.callback(self.query.stream(), [], self._fs.now())


class FakeQuery:
    def __init__(self, fs: "FakeFirestore", collection: str, filters=(), orders=(), limit=None, cursor=None):
        self._fs = fs
        self._collection = collection
        self._filters = list(filters)
        self._orders = list(orders)
        self._limit = limit
        self._cursor = cursor

    def _copy(self, **changes):
        state = dict(filters=self._filters, orders=self._orders, limit=self._limit, cursor=self._cursor)
        state.update(changes)
        return FakeQuery(self._fs, self._collection, **state)

    def where(self, field_path=None, op_string=None, value=None, *, filter=None):
        if filter is not None:
            field_path, op_string, value = filter.field_path, filter.op_string, filter.value
        return self._copy(filters=self._filters + [(field_path, op_string, value)])

    def order_by(self, field_path, direction=firestore.Query.ASCENDING):
        return self._copy(orders=self._orders + [(field_path, direction)])

    def limit(self, count):
        return self._copy(limit=count)

    def start_after(self, document_fields):
        return self._copy(cursor=("after", document_fields))

    def start_at(self, document_fields):
        return self._copy(cursor=("at", document_fields))

    def _cmp(self, a: dict, b: dict) -> int:
        for field, direction in self._orders:
            result = _compare(a.get(field), b.get(field))
            if direction == firestore.Query.DESCENDING:
                result = -result
            if result:
                return result
        return 0

    def stream(self, timeout=None, **kwargs):
        self._fs._tick("stream")
        rows = [
            (doc_id, data)
            for doc_id, data in self._fs.data.get(self._collection, {}).items()
            if all(_matches(data, f, op, v) for f, op, v in self._filters)
            and all(f in data for f, _ in self._orders)
        ]
        rows.sort(key=cmp_to_key(lambda x, y: self._cmp(x[1], y[1])))
        if self._cursor:
            kind, fields = self._cursor
            keep = (lambda c: c > 0) if kind == "after" else (lambda c: c >= 0)
            rows = [r for r in rows if keep(self._cmp(r[1], fields))]
        if self._limit:
            rows = rows[: self._limit]
        return [
            FakeSnapshot(FakeDocRef(self._fs, self._collection, doc_id), data,
                         self._fs.update_times.get(f"{self._collection}/{doc_id}"))
            for doc_id, data in rows
        ]

    def get(self, timeout=None, **kwargs):
        return self.stream(timeout=timeout)

    def on_snapshot(self, callback):
        watch = FakeWatch(self._fs, self, callback)
        self._fs.watches.append(watch)
        watch.fire()
        return watch


class FakeCollection(FakeQuery):
    def __init__(self, fs: "FakeFirestore", name: str):
        super().__init__(fs, name)
        self.id = name

    def document(self, document_id=None):
        return FakeDocRef(self._fs, self._collection, document_id or uuid.uuid4().hex[:20])

    def add(self, document_data, document_id=None, timeout=None, **kwargs):
        ref = self.document(document_id)
        self._fs._tick("add")
        self._fs._set(ref, document_data, False)
        return self._fs.update_times[ref.path], ref


class FakeBatch:
    def __init__(self, fs: "FakeFirestore"):
        self._fs = fs
        self._writes = []

    def set(self, reference, document_data, merge=False):
        self._writes.append(("set", reference, document_data, merge))

    def update(self, reference, field_updates, option=None):
        self._writes.append(("update", reference, field_updates, option))

    def delete(self, reference, option=None):
        self._writes.append(("delete", reference, None, None))

    def commit(self, timeout=None, **kwargs):
        self._fs._tick("commit")
        self._fs.batch_sizes.append(len(self._writes))
        for kind, ref, data, extra in self._writes:
            if kind == "set":
                self._fs._set(ref, data, extra)
            elif kind == "update":
                self._fs._update(ref, data, extra)
            else:
                self._fs._delete(ref)
        return []


class FakeFirestore:
    """In-memory stand-in for `firestore.Client`.

    - `fail_next(exc, times)` makes the next calls raise `exc`
    - `calls` counts calls per method (get/set/update/delete/stream/add/commit)
    - SERVER_TIMESTAMP resolves to `now()`
    """

    def __init__(self, now=None):
        self.now = now or (lambda: dt.datetime.now(dt.timezone.utc))
        self.data: dict[str, dict[str, dict]] = {}
        self.update_times: dict[str, int] = {}
        self.calls: Counter = Counter()
        self.batch_sizes: list[int] = []
        self.watches: list[FakeWatch] = []
        self._failures: deque = deque()
        self._seq = 0

    # client API
    def collection(self, name: str):
        return FakeCollection(self, name)

    def batch(self):
        return FakeBatch(self)

    def write_option(self, **kwargs):
        return SimpleNamespace(**kwargs)

    # test helpers
    def seed(self, collection: str, doc_id: str, data: dict) -> None:
        self._store(collection, doc_id, dict(data))

    def docs(self, collection: str) -> dict[str, dict]:
        return copy.deepcopy(self.data.get(collection, {}))

    def fail_next(self, exc: Exception, times: int = 1) -> None:
        self._failures.extend([exc] * times)

    def emit(self) -> None:
        for watch in list(self.watches):
            watch.fire()

    # internals
    def _tick(self, op: str) -> None:
        self.calls[op] += 1
        if self._failures:
            raise self._failures.popleft()

    def _resolve(self, data: dict) -> dict:
        return {
            k: (self.now() if v is firestore.SERVER_TIMESTAMP else copy.deepcopy(v))
            for k, v in data.items()
        }

    def _store(self, collection: str, doc_id: str, data: dict) -> None:
        self._seq += 1
        self.data.setdefault(collection, {})[doc_id] = data
        self.update_times[f"{collection}/{doc_id}"] = self._seq

    def _set(self, ref: FakeDocRef, data: dict, merge: bool) -> None:
        current = self.data.get(ref.collection_name, {}).get(ref.id) if merge else None
        self._store(ref.collection_name, ref.id, {**(current or {}), **self._resolve(data)})

    def _update(self, ref: FakeDocRef, data: dict, option) -> None:
        current = self.data.get(ref.collection_name, {}).get(ref.id)
        if current is None:
            raise gcp_exceptions.NotFound(f"No document to update: {ref.path}")
        expected = getattr(option, "last_update_time", None)
        if option is not None and expected != self.update_times.get(ref.path):
            raise gcp_exceptions.FailedPrecondition("the stored version does not match the required base version")
        self._store(ref.collection_name, ref.id, {**current, **self._resolve(data)})

    def _delete(self, ref: FakeDocRef) -> None:
        self.data.get(ref.collection_name, {}).pop(ref.id, None)
        self.update_times.pop(ref.path, None)


class FakeIdentity:
    def __init__(self):
        self.created: list[dict] = []

    def create_user(self, **kwargs):
        self.created.append(kwargs)
        return SimpleNamespace(uid=f"new_uid_{len(self.created)}")


# -------------------------
# Fixtures
# -------------------------
PROFILES = {
    "admin_uid": {"name": "Ada Admin", "email": "admin@test.com", "role": "admin", "status": "active"},
    "master_uid": {"name": "Max Master", "email": "master@test.com", "role": "master", "status": "active"},
    "user_uid": {"name": "Uma User", "email": "user@test.com", "role": "user", "status": "active",
                 "linkedMaster": "master_uid"},
    "other_uid": {"name": "Otto Other", "email": "other@test.com", "role": "user", "status": "active"},
    "inactive_uid": {"name": "Ina Inactive", "email": "inactive@test.com", "role": "user",
                     "status": "inactive"},
}


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def fs(clock):
    return FakeFirestore(now=clock.now)


@pytest.fixture()
def sanitizer():
    return DataSanitizer()


@pytest.fixture()
def cache(clock):
    return QueryCache(ttl=300, max_entries=100, clock=clock)


@pytest.fixture()
def retry_queue():
    queue = RetryQueue(max_attempts=3, base_delay=0)
    yield queue
    queue.shutdown()


@pytest.fixture()
def manager(fs, sanitizer, cache, retry_queue):
    return FirestoreManager(fs, sanitizer, cache, retry_queue, activity=None, timeout=5.0,
                            actor_provider=lambda: "tester")


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        session_file=str(tmp_path / "session.json"),
        retry_delay_seconds=0,
        request_timeout_seconds=5,
    )


@pytest.fixture()
def services(settings, fs):
    for uid, profile in PROFILES.items():
        fs.seed("users", uid, profile)
    svc = build_services(settings, fs, executor=InlineExecutor())
    yield svc
    svc.close()


@pytest.fixture()
def fake_identity():
    return FakeIdentity()


@pytest.fixture()
def client(services, fake_identity):
    def fake_get_auth():
        def _auth(authorization: str | None):
            if not authorization or not authorization.startswith("Bearer "):
                raise UnauthenticatedError("Missing bearer token")

            token = authorization.split(" ", 1)[1].strip()
            uid = f"{token}_uid"
            if uid in PROFILES:
                return {"uid": uid, "email": PROFILES[uid]["email"]}

            raise UnauthenticatedError("Invalid token")
        return _auth

    app.dependency_overrides[get_services] = lambda: services
    app.dependency_overrides[get_auth] = fake_get_auth
    app.dependency_overrides[get_identity] = lambda: fake_identity

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}
