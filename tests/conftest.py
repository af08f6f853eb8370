import os
import tempfile

# point the app at a throwaway store before anything imports it
_tmpdir = tempfile.mkdtemp(prefix="partytix-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_tmpdir, 'test.db')}"
os.environ.pop("AZURE_STORAGE_CONNECTION_STRING", None)

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from partytix.db import Base, SessionLocal, engine  # noqa: E402
from partytix.deps import get_blob_store, get_preview_cache, get_redis  # noqa: E402
from partytix.main import app  # noqa: E402
from partytix.preview_cache import InMemoryPreviewCache  # noqa: E402
from tests.helpers import FakeClock, InMemoryBlobStore  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return InMemoryPreviewCache(clock=clock)


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def redis():
    return None


@pytest_asyncio.fixture(scope="function")
async def client(cache, blob_store, redis):
    app.dependency_overrides[get_preview_cache] = lambda: cache
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    app.dependency_overrides[get_redis] = lambda: redis
    try:
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test", timeout=10.0) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
