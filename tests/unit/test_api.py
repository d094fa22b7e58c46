"""Unit tests for the invoice assistant API.

Tests cover:
- Health, readiness and Prometheus metrics endpoints
- Document submission (validation, terminal states)
- Chat threads scoped to their owner and freeform chat replies
- Invoice listing, lookup and deletion scoped to the caller
- Token usage report and prompt cache maintenance

The application stores point at an in-memory database (see conftest), and the
model client is replaced by a scripted fake for each test.
"""

import uuid
from collections.abc import Callable, Iterator
from unittest.mock import patch

import httpx
import pytest
from fastapi import status
from fastapi.testclient import TestClient

from services.agent.base import ModelInvocationError
from services.agent.schema import ClassificationOutput, DuplicateOutput, ExtractionOutput
from services.api import main
from services.api.main import app

INVOICE = ClassificationOutput(is_invoice=True, confidence=0.95, reasoning="All elements present")
NOT_INVOICE = ClassificationOutput(is_invoice=False, confidence=0.9, reasoning="A packing slip")
NOT_DUPLICATE = DuplicateOutput(is_duplicate=False, confidence=0.98, reasoning="No match")


def _extraction(vendor: str) -> ExtractionOutput:
    return ExtractionOutput(
        customer_name="Globex",
        vendor_name=vendor,
        invoice_number="1001",
        invoice_date="2024-01-15",
        invoice_due_date="2024-02-14",
        invoice_amount="$100.00",
        line_items=[],
    )


@pytest.fixture
def client(model_client) -> Iterator[TestClient]:
    """Test client with the scripted model client wired into the agent and chat."""
    with (
        patch.object(main.agent, "model_client", model_client),
        patch.object(main.chat_assistant, "model_client", model_client),
    ):
        yield TestClient(app)


@pytest.fixture
def user_id() -> str:
    return f"user-{uuid.uuid4()}"


@pytest.fixture
def chat_id() -> str:
    return f"chat-{uuid.uuid4()}"


@pytest.fixture
def upload(page_image: Callable[..., str]) -> dict:
    return {
        "type": "pdf",
        "images": [page_image(str(uuid.uuid4()))],
        "original_file_name": "acme.pdf",
    }


def _submit(client: TestClient, chat_id: str, user_id: str, body: dict) -> httpx.Response:
    return client.post(
        f"/api/v1/chats/{chat_id}/documents", json=body, headers={"X-User-Id": user_id}
    )


def _ask(client: TestClient, chat_id: str, user_id: str, content: str) -> httpx.Response:
    return client.post(
        f"/api/v1/chats/{chat_id}/messages",
        json={"content": content},
        headers={"X-User-Id": user_id},
    )


def _queue_accepted_invoice(model_client, vendor: str = "Acme") -> None:
    model_client.queue(ClassificationOutput, INVOICE)
    model_client.queue(ExtractionOutput, _extraction(vendor))
    model_client.queue(DuplicateOutput, NOT_DUPLICATE)


def test_health_check(client: TestClient) -> None:
    """Test health check endpoint."""
    response = client.get("/health")

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["status"] == "healthy"
    assert data["service"] == "invoice-chat-assistant"
    assert "version" in data


def test_readiness_check(client: TestClient) -> None:
    response = client.get("/ready")

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"ready": True, "model_provider": "fake", "model_available": True}


def test_metrics_endpoint(client: TestClient) -> None:
    """Test Prometheus metrics endpoint."""
    client.get("/health")

    response = client.get("/metrics")

    assert response.status_code == status.HTTP_200_OK
    assert "http_requests_total" in response.text
    assert "pipeline_runs_total" in response.text


class TestSubmitDocument:
    def test_invoice_is_processed(
        self, client: TestClient, model_client, chat_id: str, user_id: str, upload: dict
    ) -> None:
        _queue_accepted_invoice(model_client)

        response = _submit(client, chat_id, user_id, upload)

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["state"] == "done"
        assert data["invoice"]["id"] == data["invoice_id"]
        assert data["invoice"]["vendor_name"] == "Acme"
        assert data["invoice"]["user_id"] == user_id
        assert len(data["messages"]) == 1
        assert data["messages"][0]["role"] == "assistant"

    def test_rejected_document_is_not_an_error(
        self, client: TestClient, model_client, chat_id: str, user_id: str, upload: dict
    ) -> None:
        model_client.queue(ClassificationOutput, NOT_INVOICE)

        response = _submit(client, chat_id, user_id, upload)

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["state"] == "rejected_not_invoice"
        assert data["invoice"] is None
        assert "A packing slip" in data["messages"][0]["content"]

    def test_invalid_image_data(
        self, client: TestClient, model_client, chat_id: str, user_id: str
    ) -> None:
        body = {"type": "image", "images": ["not base64!"], "original_file_name": "x.png"}

        response = _submit(client, chat_id, user_id, body)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "Invalid image data" in response.json()["detail"]
        assert model_client.calls == []

    def test_no_pages(self, client: TestClient, chat_id: str, user_id: str) -> None:
        body = {"type": "pdf", "images": [], "original_file_name": "empty.pdf"}

        response = _submit(client, chat_id, user_id, body)

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_unknown_document_type(
        self, client: TestClient, chat_id: str, user_id: str, upload: dict
    ) -> None:
        response = _submit(client, chat_id, user_id, {**upload, "type": "docx"})

        assert response.status_code == 422

    def test_missing_user_header(self, client: TestClient, chat_id: str, upload: dict) -> None:
        response = client.post(f"/api/v1/chats/{chat_id}/documents", json=upload)

        assert response.status_code == 422

    def test_chat_of_another_user(
        self, client: TestClient, model_client, chat_id: str, user_id: str, upload: dict
    ) -> None:
        model_client.queue(ClassificationOutput, NOT_INVOICE)
        _submit(client, chat_id, user_id, upload)

        response = _submit(client, chat_id, "someone-else", upload)

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert len(model_client.calls) == 1

    def test_messages_are_listed(
        self, client: TestClient, model_client, chat_id: str, user_id: str, upload: dict
    ) -> None:
        model_client.queue(ClassificationOutput, NOT_INVOICE)
        _submit(client, chat_id, user_id, upload)

        response = client.get(
            f"/api/v1/chats/{chat_id}/messages", headers={"X-User-Id": user_id}
        )

        assert response.status_code == status.HTTP_200_OK
        [message] = response.json()
        assert message["chat_id"] == chat_id
        assert message["content"].startswith("The uploaded file is not an invoice.")

    def test_messages_of_another_user_are_hidden(
        self, client: TestClient, model_client, chat_id: str, user_id: str, upload: dict
    ) -> None:
        model_client.queue(ClassificationOutput, NOT_INVOICE)
        _submit(client, chat_id, user_id, upload)

        response = client.get(
            f"/api/v1/chats/{chat_id}/messages", headers={"X-User-Id": "intruder"}
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_messages_of_unknown_chat(self, client: TestClient, user_id: str) -> None:
        response = client.get(
            f"/api/v1/chats/chat-{uuid.uuid4()}/messages", headers={"X-User-Id": user_id}
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestChatMessages:
    def test_question_gets_answer(
        self, client: TestClient, model_client, chat_id: str, user_id: str
    ) -> None:
        model_client.queue_reply("Net 30 means payment is due within 30 days.")

        response = _ask(client, chat_id, user_id, "What does Net 30 mean?")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["user_message"]["content"] == "What does Net 30 mean?"
        assert data["reply"]["role"] == "assistant"
        assert data["reply"]["content"] == "Net 30 means payment is due within 30 days."
        assert data["token_usage"]["total_tokens"] == 150

        listed = client.get(
            f"/api/v1/chats/{chat_id}/messages", headers={"X-User-Id": user_id}
        ).json()
        assert [message["role"] for message in listed] == ["user", "assistant"]

    def test_follow_up_after_document_sees_pipeline_message(
        self, client: TestClient, model_client, chat_id: str, user_id: str, upload: dict
    ) -> None:
        _queue_accepted_invoice(model_client)
        _submit(client, chat_id, user_id, upload)
        model_client.queue_reply("It was issued by Acme.")

        response = _ask(client, chat_id, user_id, "Who issued it?")

        assert response.status_code == status.HTTP_200_OK
        [(_, messages)] = model_client.completions
        assert [message.role for message in messages] == ["assistant", "user"]

    def test_chat_of_another_user(
        self, client: TestClient, model_client, chat_id: str, user_id: str
    ) -> None:
        model_client.queue_reply("Hello!")
        _ask(client, chat_id, user_id, "Hi")

        response = _ask(client, chat_id, "intruder", "Show me the invoices")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert len(model_client.completions) == 1

    def test_blank_message(self, client: TestClient, chat_id: str, user_id: str) -> None:
        assert _ask(client, chat_id, user_id, "").status_code == 422
        assert _ask(client, chat_id, user_id, "   ").status_code == 400

    def test_model_failure(
        self, client: TestClient, model_client, chat_id: str, user_id: str
    ) -> None:
        model_client.queue_reply(ModelInvocationError("OpenAI API error: 503"))

        response = _ask(client, chat_id, user_id, "Hello?")

        assert response.status_code == status.HTTP_502_BAD_GATEWAY
        assert "AI model" in response.json()["detail"]


class TestInvoices:
    def test_list_get_and_delete(
        self, client: TestClient, model_client, chat_id: str, user_id: str, upload: dict
    ) -> None:
        _queue_accepted_invoice(model_client)
        invoice_id = _submit(client, chat_id, user_id, upload).json()["invoice_id"]
        headers = {"X-User-Id": user_id}

        listed = client.get("/api/v1/invoices", headers=headers).json()
        assert [invoice["id"] for invoice in listed] == [invoice_id]

        fetched = client.get(f"/api/v1/invoices/{invoice_id}", headers=headers)
        assert fetched.status_code == status.HTTP_200_OK
        assert fetched.json()["invoice_number"] == "1001"

        deleted = client.delete(f"/api/v1/invoices/{invoice_id}", headers=headers)
        assert deleted.status_code == status.HTTP_204_NO_CONTENT

        missing = client.get(f"/api/v1/invoices/{invoice_id}", headers=headers)
        assert missing.status_code == status.HTTP_404_NOT_FOUND

    def test_invoices_of_other_users_are_hidden(
        self, client: TestClient, model_client, chat_id: str, user_id: str, upload: dict
    ) -> None:
        _queue_accepted_invoice(model_client)
        invoice_id = _submit(client, chat_id, user_id, upload).json()["invoice_id"]
        other = {"X-User-Id": "someone-else"}

        assert client.get(f"/api/v1/invoices/{invoice_id}", headers=other).status_code == 404
        assert client.delete(f"/api/v1/invoices/{invoice_id}", headers=other).status_code == 404
        assert client.get("/api/v1/invoices", headers=other).json() == []


class TestTokenUsage:
    def test_report_includes_rejected_runs(
        self,
        client: TestClient,
        model_client,
        user_id: str,
        page_image: Callable[..., str],
    ) -> None:
        vendor = f"Initech {user_id}"
        model_client.queue(ClassificationOutput, NOT_INVOICE)
        _queue_accepted_invoice(model_client, vendor=vendor)
        for label in ("slip", "invoice"):
            body = {
                "type": "pdf",
                "images": [page_image(f"{label}-{user_id}")],
                "original_file_name": f"{label}.pdf",
            }
            _submit(client, f"chat-{uuid.uuid4()}", user_id, body)

        response = client.get("/api/v1/tokens", headers={"X-User-Id": user_id})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["lookback_days"] == 90
        assert len(data["usage"]) == 4
        assert data["summary"]["total_invoices"] == 2
        assert data["summary"]["total_tokens_used"] == 600
        vendors = {row["vendor_name"] for row in data["usage"]}
        assert vendors == {None, vendor}


class TestCache:
    def test_stats_and_cleanup(self, client: TestClient) -> None:
        stats = client.get("/api/v1/cache/stats")
        cleanup = client.post("/api/v1/cache/cleanup")

        assert stats.status_code == status.HTTP_200_OK
        assert "total_entries" in stats.json()
        assert cleanup.status_code == status.HTTP_200_OK
        assert cleanup.json()["removed"] >= 0

    def test_disabled_cache(self, client: TestClient) -> None:
        with patch.object(main, "prompt_cache", None):
            assert client.get("/api/v1/cache/stats").status_code == 503
            assert client.post("/api/v1/cache/cleanup").status_code == 503
