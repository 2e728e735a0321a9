import os
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from relachat.main import (
    MESSAGE_SERVICE,
    MESSAGES_STORE,
    UPLOAD_HANDLER,
    InvalidInput,
    JsonCollectionStore,
    MessageService,
)

PNG_1K = b"\x89PNG\r\n\x1a\n" + b"\x00" * 1016


def _parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def test_send_plain_message() -> None:
    started = datetime.now(timezone.utc)
    started = started.replace(microsecond=started.microsecond // 1000 * 1000)

    message = MESSAGE_SERVICE.send("alice", "Hello, world!")

    stored = MESSAGE_SERVICE.list()
    assert [item.id for item in stored] == [message.id]
    assert stored[0].text == "Hello, world!"
    assert stored[0].file is None
    assert stored[0].sender_id == "alice"
    assert message.timestamp.endswith("Z")
    assert _parse_timestamp(stored[0].timestamp) >= started


def test_disallowed_text_is_rejected_and_not_listed() -> None:
    with pytest.raises(InvalidInput):
        MESSAGE_SERVICE.send("alice", "Hi @there")
    assert MESSAGE_SERVICE.list() == []


def test_list_keeps_send_order_across_reload() -> None:
    sent = [MESSAGE_SERVICE.send("bob", f"message {index}") for index in range(5)]

    reloaded = MessageService(
        JsonCollectionStore(MESSAGES_STORE.path, name="messages"), UPLOAD_HANDLER
    )
    listed = reloaded.list()
    assert len(listed) == 5
    assert [item.id for item in listed] == [item.id for item in sent]
    assert len({item.id for item in listed}) == 5


def test_malformed_records_are_skipped() -> None:
    MESSAGES_STORE.write([{"unexpected": True}, "junk"])
    MESSAGE_SERVICE.send(None, "still works")
    assert [item.text for item in MESSAGE_SERVICE.list()] == ["still works"]


def test_send_message_endpoint_without_file(client: TestClient) -> None:
    response = client.post(
        "/send-message", data={"senderId": "carol", "messageText": "Hello, world!"}
    )
    assert response.status_code == 201
    body = response.json()
    assert body["message"] == "Message sent"
    assert body["newMessage"]["senderId"] == "carol"
    assert body["newMessage"]["text"] == "Hello, world!"
    assert body["newMessage"]["file"] is None

    listed = client.get("/messages").json()
    assert listed == [body["newMessage"]]


def test_send_message_endpoint_rejects_invalid_text(client: TestClient) -> None:
    response = client.post(
        "/send-message", data={"senderId": "carol", "messageText": "Hi @there"}
    )
    assert response.status_code == 400
    assert response.json() == {"message": "Invalid input"}
    assert client.get("/messages").json() == []


def test_send_message_with_png_attachment(client: TestClient) -> None:
    response = client.post(
        "/send-message",
        data={"senderId": "dave", "messageText": "Look at this"},
        files={"file": ("photo.png", PNG_1K, "image/png")},
    )
    assert response.status_code == 201
    file_url = response.json()["newMessage"]["file"]
    assert file_url.startswith("/uploads/file-")
    assert file_url.endswith(".png")

    download = client.get(file_url)
    assert download.status_code == 200
    assert download.content == PNG_1K


def test_send_message_rejects_executable(client: TestClient) -> None:
    response = client.post(
        "/send-message",
        data={"senderId": "dave", "messageText": "Run me"},
        files={"file": ("setup.exe", b"MZ" + b"\x00" * 64, "image/png")},
    )
    assert response.status_code == 400
    assert response.json() == {"message": "Only image and document files are allowed"}
    assert client.get("/messages").json() == []
    assert not os.path.exists(UPLOAD_HANDLER.directory)


def test_send_message_rejects_oversized_file(client: TestClient, monkeypatch) -> None:
    monkeypatch.setattr(UPLOAD_HANDLER, "max_bytes", 512)
    response = client.post(
        "/send-message",
        data={"senderId": "dave", "messageText": "Too big"},
        files={"file": ("huge.png", PNG_1K, "image/png")},
    )
    assert response.status_code == 400
    assert client.get("/messages").json() == []
    assert os.listdir(UPLOAD_HANDLER.directory) == []


def test_invalid_text_leaves_no_uploaded_file(client: TestClient) -> None:
    response = client.post(
        "/send-message",
        data={"senderId": "dave", "messageText": "bad @ text"},
        files={"file": ("photo.png", PNG_1K, "image/png")},
    )
    assert response.status_code == 400
    assert not os.path.exists(UPLOAD_HANDLER.directory)


def test_repeated_feed_reads_are_identical(client: TestClient) -> None:
    client.post("/send-message", data={"senderId": "erin", "messageText": "one"})
    client.post("/send-message", data={"senderId": "erin", "messageText": "two"})

    first = client.get("/messages")
    second = client.get("/messages")
    assert first.status_code == 200
    assert first.content == second.content
    assert [item["text"] for item in first.json()] == ["one", "two"]


def test_unknown_upload_returns_404(client: TestClient) -> None:
    response = client.get("/uploads/missing.png")
    assert response.status_code == 404
    assert response.json() == {"message": "File not found."}


def test_send_message_rejects_second_file(client: TestClient) -> None:
    response = client.post(
        "/send-message",
        data={"senderId": "fay", "messageText": "Two pictures"},
        files=[
            ("file", ("one.png", PNG_1K, "image/png")),
            ("file", ("two.png", PNG_1K, "image/png")),
        ],
    )
    assert response.status_code == 400
    assert response.json() == {"message": "Only one file is accepted, in the 'file' field"}
    assert client.get("/messages").json() == []
    assert not os.path.exists(UPLOAD_HANDLER.directory)


def test_send_message_rejects_file_under_other_field(client: TestClient) -> None:
    response = client.post(
        "/send-message",
        data={"senderId": "fay", "messageText": "Wrong field"},
        files={"attachment": ("one.png", PNG_1K, "image/png")},
    )
    assert response.status_code == 400
    assert client.get("/messages").json() == []
