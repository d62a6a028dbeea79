"""Tests for POST /messages."""

import base64
from dataclasses import replace

from unibox.providers.errors import ProviderUnavailable

HEADERS = {"X-User-Id": "user-1"}


def _body(chat_id, **overrides) -> dict:
    body = {
        "accountId": "acc-wa",
        "chatId": chat_id,
        "recipients": ["+17775550123"],
        "body": "Your room is ready",
    }
    body.update(overrides)
    return body


class TestSendMessage:
    def test_created(self, client, wa_chat, ledger):
        response = client.post("/messages", json=_body(wa_chat.id), headers=HEADERS)

        assert response.status_code == 201
        data = response.json()
        assert data["externalMessageId"] == "out-1"
        assert data["chatId"] == wa_chat.id
        assert data["direction"] == "outbound"
        assert data["status"] == "sent"
        assert data["body"] == "Your room is ready"
        assert data["readAt"] is None
        assert data["id"] in ledger.messages

    def test_attachment_decoded(self, client, wa_chat, sender):
        attachment = {
            "filename": "invoice.pdf",
            "mimeType": "application/pdf",
            "contentBase64": base64.b64encode(b"%PDF-1.7").decode(),
        }
        response = client.post(
            "/messages", json=_body(wa_chat.id, attachments=[attachment]), headers=HEADERS
        )

        assert response.status_code == 201
        assert response.json()["attachments"][0]["filename"] == "invoice.pdf"
        payload = sender.call_args[0][1]
        assert payload.attachments[0].content == b"%PDF-1.7"

    def test_invalid_base64_is_422(self, client, wa_chat, sender):
        attachment = {"filename": "x.bin", "contentBase64": "***"}
        response = client.post(
            "/messages", json=_body(wa_chat.id, attachments=[attachment]), headers=HEADERS
        )

        assert response.status_code == 422
        sender.assert_not_called()

    def test_recipient_with_newline_is_422(self, client, wa_chat, sender):
        body = _body(wa_chat.id, recipients=["ana@client.io\nBcc: everyone@example.com"])

        response = client.post("/messages", json=body, headers=HEADERS)

        assert response.status_code == 422
        sender.assert_not_called()
        usage = client.get("/accounts/acc-wa/usage", headers=HEADERS).json()
        assert usage["hourly"]["count"] == 0

    def test_control_chars_in_subject_and_filename_are_422(self, client, wa_chat, sender):
        attachment = {"filename": "a\r\nb.pdf", "contentBase64": base64.b64encode(b"x").decode()}
        for body in (
            _body(wa_chat.id, subject="Hi\r\nX-Injected: 1"),
            _body(wa_chat.id, attachments=[attachment]),
        ):
            assert client.post("/messages", json=body, headers=HEADERS).status_code == 422
        sender.assert_not_called()

    def test_missing_user_is_401(self, client, wa_chat):
        response = client.post("/messages", json=_body(wa_chat.id))
        assert response.status_code == 401

    def test_other_users_account_is_404(self, client, wa_chat):
        response = client.post("/messages", json=_body(wa_chat.id), headers={"X-User-Id": "user-2"})
        assert response.status_code == 404


class TestSendRejections:
    def test_limit_is_402_with_retry_after(self, client, wa_chat, clock):
        client.post("/messages", json=_body(wa_chat.id), headers=HEADERS)
        clock.advance(20)

        response = client.post("/messages", json=_body(wa_chat.id), headers=HEADERS)

        assert response.status_code == 402
        data = response.json()
        assert data["code"] == "RECIPIENT_COOLDOWN"
        assert data["retryAfter"] == 100

    def test_too_many_recipients(self, client, wa_chat):
        recipients = [f"+1555000{i:04d}" for i in range(11)]
        response = client.post(
            "/messages", json=_body(wa_chat.id, recipients=recipients), headers=HEADERS
        )

        assert response.status_code == 402
        assert response.json()["code"] == "TOO_MANY_RECIPIENTS"
        assert "retryAfter" not in response.json()

    def test_disconnected_account_is_402(self, client, ledger, wa_account, wa_chat):
        ledger.add_account(replace(wa_account, status="disconnected"))

        response = client.post("/messages", json=_body(wa_chat.id), headers=HEADERS)

        assert response.status_code == 402
        assert response.json()["code"] == "ACCOUNT_NOT_CONNECTED"

    def test_provider_failure_is_502(self, client, wa_chat, sender, ledger):
        sender.side_effect = ProviderUnavailable("unipile", "HTTP 500", status_code=500)

        response = client.post("/messages", json=_body(wa_chat.id), headers=HEADERS)

        assert response.status_code == 502
        assert response.json()["code"] == "PROVIDER_UNAVAILABLE"
        assert ledger.messages == {}
