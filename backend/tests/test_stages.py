from app import app
from conftest import DOCX_BYTES, HEADERS, USER
from routes import deps
from services.deepgram import DeepgramClient
from services.errors import EngineError
from services.renderer import DocumentRenderer

DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


def _transcribe(client, job_id="job-1", **extra):
    body = {"jobId": job_id, "audioUrl": "https://storage.test/audios/user-1/job-1.mp3", **extra}
    return client.post("/api/transcribe", json=body, headers=HEADERS)


class TestTranscribe:
    def test_accepted(self, client, make_job, load_job, deepgram):
        make_job("job-1", statuses=("uploaded",))

        response = _transcribe(client)

        assert response.status_code == 202
        assert response.json() == {"accepted": True, "jobId": "job-1"}
        job = load_job("job-1")
        assert job["status"] == "transcribing"
        assert job["engineRequestId"] == "req-1"
        submitted = deepgram.submitted[0]
        assert submitted["tag"] == "job-1"
        assert submitted["callback_url"] == "http://testserver/api/transcribe-callback?secret=test-secret"

    def test_engine_rejects_audio(self, client, make_job, load_job, notifier, deepgram):
        make_job("job-1", statuses=("uploaded",))
        deepgram.error = EngineError("Deepgram HTTP 400: Unsupported audio format", status_code=400)

        response = _transcribe(client)

        assert response.status_code == 502
        job = load_job("job-1")
        assert job["status"] == "error"
        assert "Unsupported audio format" in job["error"]
        assert "transcribed" not in notifier.statuses("job-1")

    def test_engine_not_answering(self, client, make_job, load_job, silent_server):
        make_job("job-1", statuses=("uploaded",))
        app.dependency_overrides[deps.get_transcription_client_factory] = lambda: (
            lambda api_key: DeepgramClient(api_key, base_url=silent_server, timeout=0.5)
        )

        response = _transcribe(client)

        assert response.status_code == 502
        job = load_job("job-1")
        assert job["status"] == "error"
        assert job["error"].startswith("Transcription failed: Deepgram unreachable")

    def test_wrong_state(self, client, make_job):
        make_job("job-1")

        assert _transcribe(client).status_code == 409

    def test_unknown_job(self, client):
        assert _transcribe(client, job_id="missing").status_code == 404

    def test_missing_audio_url(self, client, make_job, load_job):
        make_job("job-1", statuses=("uploaded",))

        response = client.post("/api/transcribe", json={"jobId": "job-1"}, headers=HEADERS)

        assert response.status_code == 400
        assert load_job("job-1")["status"] == "uploaded"

    def test_requires_user(self, client, make_job):
        make_job("job-1", statuses=("uploaded",))

        response = client.post("/api/transcribe", json={"jobId": "job-1", "audioUrl": "x"})

        assert response.status_code == 401


class TestIdentifySpeakers:
    def test_returns_identification(self, client, llm):
        llm.responses.append({
            "summary": "Budget review.",
            "speakers": [{"speakerIndex": 0, "name": "Ana", "role": "Chair"}],
        })

        response = client.post(
            "/api/identify-speakers",
            json={"transcript": "[Speaker:0] Hola.", "contextHints": "Board meeting"},
            headers=HEADERS,
        )

        assert response.status_code == 200
        assert response.json() == {
            "diarizedTranscript": "**Ana, Chair:** Hola.",
            "summary": "Budget review.",
            "speakers": [{"name": "Ana", "role": "Chair"}],
        }

    def test_empty_transcript(self, client):
        response = client.post("/api/identify-speakers", json={"transcript": "  "}, headers=HEADERS)

        assert response.status_code == 400

    def test_engine_failure(self, client, llm):
        llm.responses.append(EngineError("Gemini HTTP 500: overloaded", status_code=500))

        response = client.post("/api/identify-speakers", json={"transcript": "[Speaker:0] Hola."}, headers=HEADERS)

        assert response.status_code == 502


class TestGenerateDocument:
    def test_returns_draft(self, client, llm):
        llm.responses.append({"documentBody": "# Minutes", "agreements": ["Approve budget"]})

        response = client.post(
            "/api/generate-document",
            json={"transcript": "**Ana, Chair:** Hola.", "speakers": [{"name": "Ana", "role": "Chair"}]},
            headers=HEADERS,
        )

        assert response.status_code == 200
        assert response.json() == {"documentBody": "# Minutes", "agreements": ["Approve budget"]}

    def test_uses_template_instruction(self, client, llm, template):
        llm.responses.append({"documentBody": "# Minutes", "agreements": []})

        client.post(
            "/api/generate-document",
            json={"transcript": "**Ana, Chair:** Hola.", "speakers": []},
            headers=HEADERS,
        )

        assert "Write formal minutes." in llm.prompts[0]

    def test_empty_draft_is_a_content_failure(self, client, llm):
        llm.responses.append({"documentBody": "", "agreements": []})

        response = client.post(
            "/api/generate-document",
            json={"transcript": "**Ana, Chair:** Hola.", "speakers": []},
            headers=HEADERS,
        )

        assert response.status_code == 502
        assert response.json()["detail"].startswith("Content validation failed:")

    def test_transport_failure_has_stage_reason(self, client, llm):
        llm.responses.append(EngineError("Gemini HTTP 503: unavailable", status_code=503))

        response = client.post(
            "/api/generate-document",
            json={"transcript": "**Ana, Chair:** Hola.", "speakers": []},
            headers=HEADERS,
        )

        assert response.status_code == 502
        assert response.json()["detail"].startswith("Document drafting failed:")


class TestExport:
    def test_streams_docx_and_archives_it(self, client, template, make_job, load_job, renderer, storage):
        make_job("job-1", statuses=("generated",), document_body="# Minutes")

        response = client.post(
            "/api/export",
            json={"documentBody": "# Minutes", "ownerId": USER, "jobId": "job-1"},
            headers=HEADERS,
        )

        assert response.status_code == 200
        assert response.headers["content-type"] == DOCX
        assert 'filename="minutes-weekly-sync.docx"' in response.headers["content-disposition"]
        assert response.content == DOCX_BYTES
        assert renderer.calls == [("generate-docx-board", "# Minutes")]
        export_path = load_job("job-1")["exportPath"]
        assert export_path == f"documents/{USER}/job-1.docx"
        assert storage.read(export_path) == DOCX_BYTES

    def test_owner_mismatch(self, client, template):
        response = client.post(
            "/api/export", json={"documentBody": "# Minutes", "ownerId": "someone-else"}, headers=HEADERS
        )

        assert response.status_code == 401

    def test_no_template(self, client):
        response = client.post("/api/export", json={"documentBody": "# Minutes", "ownerId": USER}, headers=HEADERS)

        assert response.status_code == 404

    def test_empty_body(self, client, template):
        response = client.post("/api/export", json={"documentBody": " ", "ownerId": USER}, headers=HEADERS)

        assert response.status_code == 400

    def test_renderer_failure(self, client, template, renderer):
        renderer.error = EngineError("Document renderer HTTP 500: crash", status_code=500)

        response = client.post("/api/export", json={"documentBody": "# Minutes", "ownerId": USER}, headers=HEADERS)

        assert response.status_code == 502
        assert response.json()["detail"].startswith("Document server error")

    def test_renderer_not_answering(self, client, template, silent_server):
        app.dependency_overrides[deps.get_renderer] = lambda: DocumentRenderer(silent_server, timeout=0.5)

        response = client.post("/api/export", json={"documentBody": "# Minutes", "ownerId": USER}, headers=HEADERS)

        assert response.status_code == 502
        assert "Document renderer unreachable" in response.json()["detail"]
