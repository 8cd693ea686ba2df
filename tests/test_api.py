from datetime import datetime, timedelta, timezone

import pytest

from docchat.auth import create_session_token
from docchat.chat_service import NO_ANSWER
from docchat.database import get_db_session
from docchat.models import Document, DocumentVector, User

from conftest import create_user, make_pdf, rate_limit_error


def upload(client, headers, pages, filename="notes.pdf"):
    return client.post(
        "/api/upload",
        files={"file": (filename, make_pdf(pages), "application/pdf")},
        headers=headers
    )


class TestAuthentication:
    """Session handling shared by every API route"""

    @pytest.mark.parametrize("method,path", [
        ("get", "/api/documents"),
        ("post", "/api/upload"),
        ("delete", "/api/documents/some-id"),
        ("post", "/api/chat"),
    ])
    def test_requires_session(self, client, method, path):
        response = client.request(method.upper(), path)

        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}

    def test_rejects_tampered_token(self, client, auth_headers):
        headers = {"Authorization": auth_headers["Authorization"] + "x"}

        response = client.get("/api/documents", headers=headers)

        assert response.status_code == 401

    def test_rejects_expired_token(self, client, user):
        issued = datetime.now(timezone.utc) - timedelta(days=31)
        token = create_session_token(user, now=issued)

        response = client.get("/api/documents", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401

    def test_unknown_user_is_not_found(self, client):
        ghost = User(id="ghost-id", email="ghost@example.com", name="Ghost")
        headers = {"Authorization": f"Bearer {create_session_token(ghost)}"}

        response = client.get("/api/documents", headers=headers)

        assert response.status_code == 404
        assert response.json() == {"error": "User not found"}

    def test_session_cookie_is_accepted(self, client, user):
        cookie = f"docchat_session={create_session_token(user)}"

        response = client.get("/api/documents", headers={"Cookie": cookie})

        assert response.status_code == 200


class TestUpload:
    """PDF upload and indexing"""

    def test_upload_indexes_chunks(self, client, auth_headers, user, vector_store):
        response = upload(client, auth_headers, ["First page about apples.", "Second page about pears."])

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["chunkCount"] == 2
        assert body["document"]["name"] == "notes.pdf"

        points = vector_store.points_for("alice@example.com")
        assert len(points) == 2
        metadata = [payload["metadata"] for _, payload in points.values()]
        assert {m["pageNumber"] for m in metadata} == {1, 2}
        assert all(m["documentId"] == body["document"]["id"] for m in metadata)
        assert all(m["source"] == "pdf" and m["userId"] == user.id for m in metadata)

        with get_db_session() as db:
            document = db.query(Document).one()
            assert "apples" in document.content
            recorded = {v.point_id for v in db.query(DocumentVector).all()}
        assert recorded == set(points.keys())

    def test_preview_is_truncated(self, client, auth_headers):
        page_text = "\n".join(["lorem ipsum dolor sit amet consectetur"] * 15)
        response = upload(client, auth_headers, [page_text] * 10)

        assert response.status_code == 200
        with get_db_session() as db:
            document = db.query(Document).one()
            assert len(document.content) == 4000
            assert "\0" not in document.content

    def test_missing_file(self, client, auth_headers):
        response = client.post("/api/upload", headers=auth_headers)

        assert response.status_code == 400
        assert response.json() == {"error": "No file provided"}

    def test_rejects_non_pdf(self, client, auth_headers):
        response = client.post(
            "/api/upload",
            files={"file": ("notes.txt", b"plain text", "text/plain")},
            headers=auth_headers
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Only PDF files are allowed"}

    def test_rejects_oversized_file(self, client, auth_headers, monkeypatch, embedding_provider):
        from docchat import document_processor
        monkeypatch.setattr(document_processor.settings, "max_file_size_mb", 0)

        response = upload(client, auth_headers, ["Some text"])

        assert response.status_code == 400
        assert response.json()["error"].startswith("File size")
        assert embedding_provider.calls == []
        with get_db_session() as db:
            assert db.query(Document).count() == 0

    def test_rejects_pdf_without_text(self, client, auth_headers, vector_store):
        response = upload(client, auth_headers, [""])

        assert response.status_code == 400
        assert response.json() == {"error": "No extractable text found in PDF"}
        with get_db_session() as db:
            assert db.query(Document).count() == 0

    def test_quota_error_returns_429_and_cleans_up(self, client, auth_headers, embedding_provider, vector_store):
        embedding_provider.error = rate_limit_error()

        response = upload(client, auth_headers, ["Some text"])

        assert response.status_code == 429
        body = response.json()
        assert body["error"].startswith("OpenAI API quota exceeded")
        assert "platform.openai.com/account/billing" in body["details"]
        with get_db_session() as db:
            assert db.query(Document).count() == 0
        assert vector_store.points_for("alice@example.com") == {}

    def test_vector_store_failure_returns_500_and_cleans_up(self, client, auth_headers, vector_store):
        vector_store.upsert_error = RuntimeError("vector database unavailable")

        response = upload(client, auth_headers, ["Some text"])

        assert response.status_code == 500
        assert response.json() == {
            "error": "Failed to process PDF",
            "details": "vector database unavailable"
        }
        with get_db_session() as db:
            assert db.query(Document).count() == 0
            assert db.query(DocumentVector).count() == 0
        assert len(vector_store.deleted_points) == 1

    def test_cleanup_errors_do_not_mask_failure(self, client, auth_headers, vector_store):
        vector_store.upsert_error = RuntimeError("upsert failed")
        vector_store.delete_error = RuntimeError("delete failed")

        response = upload(client, auth_headers, ["Some text"])

        assert response.status_code == 500
        assert response.json()["details"] == "upsert failed"


class TestDocuments:
    """Listing and deleting documents"""

    def test_list_newest_first(self, client, auth_headers):
        upload(client, auth_headers, ["one"], filename="first.pdf")
        upload(client, auth_headers, ["two"], filename="second.pdf")

        response = client.get("/api/documents", headers=auth_headers)

        assert response.status_code == 200
        documents = response.json()
        assert [d["name"] for d in documents] == ["second.pdf", "first.pdf"]
        assert set(documents[0].keys()) == {"id", "name", "createdAt"}

    def test_list_only_own_documents(self, client, auth_headers):
        upload(client, auth_headers, ["mine"])
        bob = create_user("bob@example.com", "Bob")
        bob_headers = {"Authorization": f"Bearer {create_session_token(bob)}"}

        response = client.get("/api/documents", headers=bob_headers)

        assert response.json() == []

    def test_delete_removes_record_and_vectors(self, client, auth_headers, vector_store):
        keep = upload(client, auth_headers, ["keep me"], filename="keep.pdf").json()["document"]
        drop = upload(client, auth_headers, ["drop me", "and me"], filename="drop.pdf").json()["document"]

        response = client.delete(f"/api/documents/{drop['id']}", headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {"success": True}

        remaining = vector_store.points_for("alice@example.com")
        assert {payload["metadata"]["documentId"] for _, payload in remaining.values()} == {keep["id"]}
        with get_db_session() as db:
            assert [d.id for d in db.query(Document).all()] == [keep["id"]]
            assert db.query(DocumentVector).count() == 1

    def test_delete_other_users_document(self, client, auth_headers):
        document = upload(client, auth_headers, ["private"]).json()["document"]
        bob = create_user("bob@example.com", "Bob")
        bob_headers = {"Authorization": f"Bearer {create_session_token(bob)}"}

        response = client.delete(f"/api/documents/{document['id']}", headers=bob_headers)

        assert response.status_code == 404
        assert response.json() == {"error": "Document not found"}
        with get_db_session() as db:
            assert db.query(Document).count() == 1

    def test_delete_by_filter_runs_when_point_delete_fails(self, client, auth_headers, vector_store, chat_model):
        document = upload(client, auth_headers, ["The launch code is 1234."]).json()["document"]
        vector_store.delete_points_error = RuntimeError("point delete failed")

        response = client.delete(f"/api/documents/{document['id']}", headers=auth_headers)

        assert response.status_code == 200
        assert vector_store.points_for("alice@example.com") == {}

        chat = client.post("/api/chat", json={"message": "launch code"}, headers=auth_headers)
        assert chat.json() == {"response": NO_ANSWER, "sources": []}
        assert chat_model.prompts == []

    def test_delete_succeeds_when_vector_cleanup_fails(self, client, auth_headers, vector_store):
        document = upload(client, auth_headers, ["text"]).json()["document"]
        vector_store.delete_error = RuntimeError("vector database unavailable")

        response = client.delete(f"/api/documents/{document['id']}", headers=auth_headers)

        assert response.status_code == 200
        with get_db_session() as db:
            assert db.query(Document).count() == 0


class TestChat:
    """Retrieval-augmented chat"""

    def test_answers_from_uploaded_documents(self, client, auth_headers, chat_model):
        document = upload(
            client, auth_headers,
            ["The capital of France is Paris.", "Bananas are yellow."]
        ).json()["document"]

        response = client.post("/api/chat", json={"message": "What is the capital of France?"},
                               headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["response"] == "Paris is the capital of France."
        assert body["sources"][0]["documentId"] == document["id"]
        assert body["sources"][0]["pageNumber"] == 1

        prompt = chat_model.prompts[0]
        assert "The capital of France is Paris." in prompt
        assert "Question: What is the capital of France?" in prompt
        assert NO_ANSWER in prompt

    def test_retrieves_at_most_four_chunks(self, client, auth_headers):
        upload(client, auth_headers, [f"page number {i}" for i in range(6)])

        response = client.post("/api/chat", json={"message": "page"}, headers=auth_headers)

        assert len(response.json()["sources"]) == 4

    def test_without_documents_skips_model(self, client, auth_headers, chat_model):
        response = client.post("/api/chat", json={"message": "Anything?"}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {"response": NO_ANSWER, "sources": []}
        assert chat_model.prompts == []

    def test_without_documents_skips_embeddings(self, client, auth_headers, embedding_provider):
        embedding_provider.error = rate_limit_error()

        response = client.post("/api/chat", json={"message": "Anything?"}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {"response": NO_ANSWER, "sources": []}
        assert embedding_provider.calls == []

    def test_does_not_see_other_users_documents(self, client, auth_headers, chat_model):
        upload(client, auth_headers, ["Alice's secret recipe"])
        bob = create_user("bob@example.com", "Bob")
        bob_headers = {"Authorization": f"Bearer {create_session_token(bob)}"}

        response = client.post("/api/chat", json={"message": "secret recipe"}, headers=bob_headers)

        assert response.json()["response"] == NO_ANSWER
        assert chat_model.prompts == []

    @pytest.mark.parametrize("payload", [{}, {"message": ""}, {"message": "   "}])
    def test_requires_message(self, client, auth_headers, payload):
        response = client.post("/api/chat", json=payload, headers=auth_headers)

        assert response.status_code == 400
        assert response.json() == {"error": "No message provided"}

    def test_invalid_body(self, client, auth_headers):
        response = client.post("/api/chat", content=b"not json",
                               headers={**auth_headers, "Content-Type": "application/json"})

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid request body"}

    def test_model_failure(self, client, auth_headers, chat_model):
        upload(client, auth_headers, ["Some context"])
        chat_model.error = RuntimeError("model unavailable")

        response = client.post("/api/chat", json={"message": "context?"}, headers=auth_headers)

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to process chat message"}

    def test_model_quota_error(self, client, auth_headers, chat_model):
        upload(client, auth_headers, ["Some context"])
        chat_model.error = rate_limit_error()

        response = client.post("/api/chat", json={"message": "context?"}, headers=auth_headers)

        assert response.status_code == 429


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["vector_store"]["store_type"] == "memory"

    def test_unhealthy_vector_store(self, client, vector_store):
        vector_store.stats_error = ConnectionError("vector database unreachable")

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json() == {"error": "Service unhealthy"}
