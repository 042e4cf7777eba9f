import json
import os
import socket
import tempfile
import threading
import urllib.request

# Settings are read once at import time by database.py; point them at test doubles first.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["DATA_DIR"] = tempfile.mkdtemp(prefix="documette-test-")
os.environ["CALLBACK_SECRET"] = "test-secret"
os.environ["PUBLIC_BASE_URL"] = "http://testserver"
os.environ["DEEPGRAM_API_KEY"] = "dg-test-key"
os.environ["GEMINI_API_KEY"] = "gm-test-key"
os.environ["RENDERER_BASE_URL"] = "http://renderer.test"

import pytest
from fastapi.testclient import TestClient

from app import app
from database import Base, SessionLocal, engine
from models import Job, Template, UserProfile
from routes import deps
from services.job_store import JobStore, job_to_dict
from services.storage import LocalStorage

USER = "user-1"
HEADERS = {"X-User-Id": USER}
SECRET = "test-secret"

DOCX_BYTES = b"PK\x03\x04fake-docx-payload"


class FakeNotifier:
    def __init__(self):
        self.events = []

    def publish(self, owner_id, event_type, current, previous=None):
        self.events.append({
            "ownerId": owner_id,
            "eventType": event_type,
            "previous": previous,
            "current": current,
        })

    def listen(self, owner_id, heartbeat_sec=15.0):
        yield None
        for event in list(self.events):
            if event["ownerId"] == owner_id:
                yield {k: event[k] for k in ("eventType", "previous", "current")}

    def statuses(self, job_id):
        """Status sequence observed by a subscriber for ``job_id``."""
        seen = []
        for event in self.events:
            current = event["current"] or {}
            if current.get("id") == job_id and (not seen or seen[-1] != current["status"]):
                seen.append(current["status"])
        return seen


class FakeDispatcher:
    def __init__(self):
        self.calls = []
        self.error = None

    def dispatch(self, stage, job_id):
        if self.error:
            raise self.error
        self.calls.append((stage, job_id))
        return f"rq-{len(self.calls)}"


def deepgram_payload(words, transcript=""):
    return {
        "metadata": {"request_id": "req-1"},
        "results": {
            "channels": [{"alternatives": [{"transcript": transcript, "words": words}]}],
        },
    }


class FakeDeepgram:
    def __init__(self):
        self.submitted = []
        self.fetched = []
        self.error = None
        self.result = deepgram_payload([
            {"word": "hola", "punctuated_word": "Hola", "speaker": 0},
            {"word": "a", "punctuated_word": "a", "speaker": 0},
            {"word": "todos", "punctuated_word": "todos.", "speaker": 0},
            {"word": "hola", "punctuated_word": "Hola", "speaker": 1},
            {"word": "juan", "punctuated_word": "Juan.", "speaker": 1},
        ])

    def submit(self, audio_url, tag, callback_url):
        if self.error:
            raise self.error
        self.submitted.append({"audio_url": audio_url, "tag": tag, "callback_url": callback_url})
        return "req-1"

    def fetch_result(self, request_id):
        self.fetched.append(request_id)
        return self.result


class FakeLLM:
    """Returns queued JSON objects (or raises queued exceptions) in order."""

    def __init__(self):
        self.responses = []
        self.prompts = []

    def generate_json(self, prompt, schema, **kwargs):
        self.prompts.append(prompt)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeRenderer:
    def __init__(self):
        self.calls = []
        self.error = None

    def render(self, function_name, document_body):
        if self.error:
            raise self.error
        self.calls.append((function_name, document_body))
        return DOCX_BYTES


class FakeResponse:
    def __init__(self, body):
        self._body = body

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeUrlopen:
    """Stands in for urllib.request.urlopen; answers queued bodies or raises queued exceptions."""

    def __init__(self):
        self.requests = []
        self.timeouts = []
        self.responses = []

    def __call__(self, req, timeout=None):
        self.requests.append(req)
        self.timeouts.append(timeout)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return FakeResponse(response)

    def json_body(self, index=-1):
        return json.loads(self.requests[index].data)


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture(autouse=True)
def db_schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def deepgram():
    return FakeDeepgram()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def renderer():
    return FakeRenderer()


@pytest.fixture
def urlopen(monkeypatch):
    fake = FakeUrlopen()
    monkeypatch.setattr(urllib.request, "urlopen", fake)
    return fake


@pytest.fixture
def silent_server():
    """Address of a server that accepts connections and never answers."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(8)
    yield f"http://127.0.0.1:{sock.getsockname()[1]}"
    sock.close()


@pytest.fixture
def hangup_server():
    """Address of a server that closes every connection without a response."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(8)
    sock.settimeout(0.1)
    stop = threading.Event()

    def _serve():
        while not stop.is_set():
            try:
                conn, _ = sock.accept()
            except OSError:
                continue
            conn.recv(65536)
            conn.close()

    thread = threading.Thread(target=_serve, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{sock.getsockname()[1]}"
    stop.set()
    thread.join(timeout=1)
    sock.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage(tmp_path, clock):
    return LocalStorage(str(tmp_path / "storage"), SECRET, "http://testserver", ttl_sec=900, clock=clock)


@pytest.fixture
def client(notifier, dispatcher, deepgram, llm, renderer, storage):
    app.dependency_overrides[deps.get_notifier] = lambda: notifier
    app.dependency_overrides[deps.get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[deps.get_transcription_client_factory] = lambda: (lambda api_key: deepgram)
    app.dependency_overrides[deps.get_llm_client_factory] = lambda: (lambda api_key: llm)
    app.dependency_overrides[deps.get_renderer] = lambda: renderer
    app.dependency_overrides[deps.get_object_storage] = lambda: storage
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def template(db):
    tpl = Template(
        name="Board",
        speaker_context="Monthly board meeting of the residents' association.",
        default_prompt="Write formal minutes.",
        docx_function="generate-docx-board",
    )
    db.add(tpl)
    db.commit()
    db.add(UserProfile(user_id=USER, template_id=tpl.id))
    db.commit()
    return tpl


@pytest.fixture
def make_job(notifier):
    """Create a job for USER and walk it through ``statuses``, then apply ``fields``."""

    def _make(job_id="job-1", statuses=(), owner_id=USER, **fields):
        with SessionLocal() as session:
            store = JobStore(session, notifier)
            store.create(owner_id, "Weekly sync", job_id=job_id, file_name="meeting.mp3")
            for status in statuses:
                store.update(job_id, {"status": status})
            if fields:
                store.update(job_id, fields)
        return job_id

    return _make


@pytest.fixture
def load_job():
    def _load(job_id):
        with SessionLocal() as session:
            return job_to_dict(session.get(Job, job_id))

    return _load
