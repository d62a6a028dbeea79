"""Tests for the outbound provider senders (HTTP mocked)."""

import base64
import email
from unittest.mock import MagicMock, patch

import pytest
import requests

from unibox.infra.settings import ProviderConfig
from unibox.providers import senders
from unibox.providers.errors import ProviderUnavailable
from unibox.providers.outbound import OutboundAttachment, OutboundPayload, SendReceipt

CONFIG = ProviderConfig(unipile_base_url="https://api.example.test", unipile_api_key="key-1", http_timeout=5.0)


def _response(status_code=200, body=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.content = b"{}" if body is not None else b""
    resp.json.return_value = body
    return resp


def _wa_payload(**kwargs) -> OutboundPayload:
    defaults = dict(
        external_account_id="unipile-acc-1",
        recipients=("17775550123@s.whatsapp.net",),
        body="Check-in is at 3pm",
    )
    defaults.update(kwargs)
    return OutboundPayload(**defaults)


def _mail_payload(**kwargs) -> OutboundPayload:
    defaults = dict(
        external_account_id="owner@example.com",
        recipients=("ana@client.io",),
        body="See you soon",
        subject="Booking",
        sender_address="owner@example.com",
        credentials={"access_token": "tok-123"},
    )
    defaults.update(kwargs)
    return OutboundPayload(**defaults)


class TestUnipileSender:
    @patch("unibox.providers.transport.requests.post")
    def test_existing_chat(self, mock_post):
        mock_post.return_value = _response(body={"object": "MessageSent", "message_id": "msg-9"})

        receipt = senders.send("unipile", _wa_payload(provider_chat_id="wa-chat-1"), CONFIG)

        assert receipt.provider_message_id == "msg-9"
        assert receipt.provider_chat_id == "wa-chat-1"
        url = mock_post.call_args[0][0]
        kwargs = mock_post.call_args[1]
        assert url == "https://api.example.test/api/v1/chats/wa-chat-1/messages"
        assert kwargs["headers"]["X-API-KEY"] == "key-1"
        assert kwargs["data"] == {"text": "Check-in is at 3pm"}
        assert kwargs["timeout"] == 5.0
        assert kwargs["files"] is None

    @patch("unibox.providers.transport.requests.post")
    def test_new_chat(self, mock_post):
        mock_post.return_value = _response(body={"chat_id": "wa-new", "message_id": "msg-1"})

        receipt = senders.send("unipile", _wa_payload(), CONFIG)

        assert receipt.provider_chat_id == "wa-new"
        assert mock_post.call_args[0][0] == "https://api.example.test/api/v1/chats"
        data = mock_post.call_args[1]["data"]
        assert data["account_id"] == "unipile-acc-1"
        assert data["attendees_ids"] == ["17775550123@s.whatsapp.net"]

    @patch("unibox.providers.transport.requests.post")
    def test_attachments_sent_as_multipart(self, mock_post):
        mock_post.return_value = _response(body={"message_id": "msg-2"})
        attachment = OutboundAttachment(filename="map.png", content=b"\x89PNG", mime_type="image/png")

        senders.send("unipile", _wa_payload(provider_chat_id="c1", attachments=(attachment,)), CONFIG)

        files = mock_post.call_args[1]["files"]
        assert files == [("attachments", ("map.png", b"\x89PNG", "image/png"))]

    @patch("unibox.providers.transport.requests.post")
    def test_missing_api_key(self, mock_post):
        with pytest.raises(ProviderUnavailable, match="UNIPILE_API_KEY"):
            senders.send("unipile", _wa_payload(), ProviderConfig())
        mock_post.assert_not_called()

    @patch("unibox.providers.transport.requests.post")
    def test_http_error(self, mock_post):
        mock_post.return_value = _response(status_code=500, body={"error": "down"})

        with pytest.raises(ProviderUnavailable) as exc:
            senders.send("unipile", _wa_payload(), CONFIG)
        assert exc.value.status_code == 500
        assert exc.value.provider == "unipile"

    @patch("unibox.providers.transport.requests.post")
    def test_network_error(self, mock_post):
        mock_post.side_effect = requests.Timeout("slow")

        with pytest.raises(ProviderUnavailable, match="Timeout"):
            senders.send("unipile", _wa_payload(), CONFIG)

    @patch("unibox.providers.transport.requests.post")
    def test_missing_message_id(self, mock_post):
        mock_post.return_value = _response(body={"object": "MessageSent"})

        with pytest.raises(ProviderUnavailable, match="no message id"):
            senders.send("unipile", _wa_payload(), CONFIG)


class TestGmailSender:
    @patch("unibox.providers.transport.requests.post")
    def test_raw_message_and_thread(self, mock_post):
        mock_post.return_value = _response(body={"id": "g-out-1", "threadId": "thread-9", "labelIds": ["SENT"]})

        receipt = senders.send("gmail", _mail_payload(thread_id="thread-9"), CONFIG)

        assert receipt.provider_message_id == "g-out-1"
        assert receipt.provider_chat_id == "thread-9"
        kwargs = mock_post.call_args[1]
        assert kwargs["headers"]["Authorization"] == "Bearer tok-123"
        assert kwargs["json"]["threadId"] == "thread-9"

        raw = kwargs["json"]["raw"]
        parsed = email.message_from_bytes(base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4)))
        assert parsed["To"] == "ana@client.io"
        assert parsed["From"] == "owner@example.com"
        assert parsed["Subject"] == "Booking"
        assert "See you soon" in parsed.get_payload(decode=True).decode()

    @patch("unibox.providers.transport.requests.post")
    def test_missing_token(self, mock_post):
        with pytest.raises(ProviderUnavailable, match="access token"):
            senders.send("gmail", _mail_payload(credentials={}), CONFIG)
        mock_post.assert_not_called()


class TestMicrosoftSender:
    @patch("unibox.providers.transport.requests.post")
    def test_draft_then_send(self, mock_post):
        mock_post.side_effect = [
            _response(status_code=201, body={"id": "AAMk-1", "conversationId": "conv-1"}),
            _response(status_code=202),
        ]

        receipt = senders.send("microsoft", _mail_payload(), CONFIG)

        assert receipt.provider_message_id == "AAMk-1"
        assert receipt.provider_chat_id == "conv-1"
        assert mock_post.call_count == 2
        draft_call, send_call = mock_post.call_args_list
        assert draft_call[0][0] == "https://graph.microsoft.com/v1.0/me/messages"
        assert send_call[0][0] == "https://graph.microsoft.com/v1.0/me/messages/AAMk-1/send"
        assert draft_call[1]["headers"]["Prefer"] == 'IdType="ImmutableId"'
        recipients = draft_call[1]["json"]["toRecipients"]
        assert recipients == [{"emailAddress": {"address": "ana@client.io"}}]

    @patch("unibox.providers.transport.requests.post")
    def test_send_failure_after_draft(self, mock_post):
        mock_post.side_effect = [
            _response(status_code=201, body={"id": "AAMk-1"}),
            _response(status_code=403, body={"error": {"code": "ErrorAccessDenied"}}),
        ]

        with pytest.raises(ProviderUnavailable) as exc:
            senders.send("microsoft", _mail_payload(), CONFIG)
        assert exc.value.status_code == 403


class TestDispatch:
    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="unknown provider"):
            senders.send("telegram", _wa_payload(), CONFIG)

    def test_receipt_metadata_variants(self):
        receipt = SendReceipt("id-1", "chat-1", raw={"labelIds": ["SENT", "INBOX"]})

        assert senders.receipt_metadata("unipile", receipt).event == "message_sent"
        assert senders.receipt_metadata("gmail", receipt).label_ids == ("SENT", "INBOX")
        assert senders.receipt_metadata("microsoft", receipt).conversation_id == "chat-1"
