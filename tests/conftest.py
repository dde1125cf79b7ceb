import pytest

from fakes import FakeAPI, FakeEngine, FakeLLM, TopicEmbedder, make_incidents
from incident_triage.documents import DocumentStore, ResultsRepository
from incident_triage.store import IncidentStore


@pytest.fixture
def incidents():
    return make_incidents(3)


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def fake_api(incidents, engine):
    return FakeAPI(incidents, engine)


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def repository(tmp_path):
    return ResultsRepository(DocumentStore(tmp_path / "results"))


@pytest.fixture
def store():
    store = IncidentStore(TopicEmbedder())
    for content in (
        "DDoS attack flooding the web server with SYN packets",
        "Phishing email asking users to reset their bank password",
        "Port scan detected from external host against the firewall",
        "SQL injection attempt on the login form of the web portal",
    ):
        store.add_text(content, source="seed")
    return store
