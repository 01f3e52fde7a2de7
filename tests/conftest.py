import pytest

from match_engine import MatchEngine
from template_store import TemplateStore


@pytest.fixture
def store(tmp_path):
    s = TemplateStore(tmp_path / "ads.db")
    yield s
    s.close()


@pytest.fixture
def engine(store):
    return MatchEngine(store)
