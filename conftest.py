import pytest

from circulation.app import CirculationApp
from circulation.database import LocalStore
from circulation.query_cache import QueryCache


@pytest.fixture
def db_file(tmp_path, request):
    # Her test için benzersiz bir veritabanı dosyası oluştur
    return str(tmp_path / f"test_{request.node.name[:60]}.db")


@pytest.fixture
def store(db_file):
    return LocalStore(db_file=db_file)


@pytest.fixture
def cache():
    return QueryCache(retry=0, retry_backoff=0)


@pytest.fixture
def make_app(tmp_path, store):
    """Aynı depoyu paylaşan istemci fabrikası (ör. iki ayrı sekme)."""
    counter = {"n": 0}

    def factory(**kwargs):
        counter["n"] += 1
        n = counter["n"]
        kwargs.setdefault("store", store)
        kwargs.setdefault("snapshot_file", str(tmp_path / f"storage_{n}.json"))
        kwargs.setdefault("session_file", str(tmp_path / f"session_{n}.json"))
        kwargs.setdefault("cache", QueryCache(retry=0, retry_backoff=0))
        return CirculationApp(**kwargs)

    return factory


@pytest.fixture
def app(make_app):
    return make_app()
