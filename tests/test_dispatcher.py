from __future__ import annotations

import asyncio
import dataclasses
import io
import logging
from pathlib import Path

import pytest
from PIL import Image

from stickerbot.integrations.whatsapp.backend import SessionOptions
from stickerbot.integrations.whatsapp.connection import ConnectionStateMachine
from stickerbot.integrations.whatsapp.dispatcher import (
    MessageDispatcher,
    is_decrypt_error,
)
from stickerbot.integrations.whatsapp.errors import MediaDownloadError
from stickerbot.integrations.whatsapp.models import (
    DocumentContent,
    ImageContent,
    InboundEvent,
    StickerContent,
    TextContent,
    UnrecognizedContent,
    VideoContent,
)
from stickerbot.integrations.whatsapp.responder import (
    PING_TEXT,
    TextCommandResponder,
)
from stickerbot.integrations.whatsapp.testing import FakeSessionBackend
from stickerbot.media import StickerOptions

SENDER = "6281234567890@s.whatsapp.net"
VIDEO = b"\x00\x00\x00\x18ftypmp42" + b"\x07" * 256


async def _harness(
    bot_config, sleeps, *, retry=None, open_session=True, sticker_options=None
):
    backend = FakeSessionBackend()
    queue: asyncio.Queue[InboundEvent] = asyncio.Queue()
    connection = ConnectionStateMachine(
        backend,
        auth_path=Path(bot_config.whatsapp.auth_path),
        options=SessionOptions(logger=logging.getLogger("test.backend")),
        inbound=queue,
        logger=logging.getLogger("test.connection"),
        sleep=sleeps,
    )
    if open_session:
        await connection.start()
        await backend.emit_open()
    dispatcher = MessageDispatcher(
        connection,
        responder=TextCommandResponder(bot_config.media),
        sticker_options=sticker_options,
        retry=retry or bot_config.retry,
        logger=logging.getLogger("test.dispatch"),
        sleep=sleeps,
    )
    return backend, dispatcher, queue


def _event(content, *, ref="media-1", self_originated=False, message_id="m1"):
    return InboundEvent(
        message_id=message_id,
        sender=SENDER,
        is_self_originated=self_originated,
        content=content,
        payload_ref=ref,
    )


@pytest.mark.anyio
async def test_self_originated_messages_are_ignored(bot_config, sleeps, png_bytes) -> None:
    backend, dispatcher, _ = await _harness(bot_config, sleeps)
    backend.media["media-1"] = png_bytes

    for content in [ImageContent(), VideoContent(), TextContent("ping"), StickerContent()]:
        outcome = await dispatcher.dispatch(_event(content, self_originated=True))
        assert outcome == "ignored_self"

    assert backend.sent == []
    assert backend.download_calls == []


@pytest.mark.anyio
async def test_image_becomes_sticker(bot_config, sleeps, png_bytes) -> None:
    backend, dispatcher, _ = await _harness(bot_config, sleeps)
    backend.media["media-1"] = png_bytes

    outcome = await dispatcher.dispatch(_event(ImageContent(mime_type="image/png")))

    assert outcome == "sticker"
    assert [msg.kind for msg in backend.sent] == ["sticker"]
    sent = backend.sent[0]
    assert sent.recipient == SENDER
    image = Image.open(io.BytesIO(sent.data))
    assert image.format == "WEBP"
    assert image.size == (512, 512)


@pytest.mark.anyio
async def test_square_jpeg_becomes_sticker_without_text(bot_config, sleeps, make_image) -> None:
    backend, dispatcher, _ = await _harness(bot_config, sleeps)
    backend.media["media-1"] = make_image(300, 300, fmt="JPEG")

    outcome = await dispatcher.dispatch(_event(ImageContent(mime_type="image/jpeg")))

    assert outcome == "sticker"
    assert backend.texts() == []
    [sent] = backend.sent
    assert sent.kind == "sticker"
    image = Image.open(io.BytesIO(sent.data))
    assert image.format == "WEBP"
    assert image.size == (512, 512)


@pytest.mark.anyio
async def test_image_document_becomes_sticker(bot_config, sleeps, png_bytes) -> None:
    backend, dispatcher, _ = await _harness(bot_config, sleeps)
    backend.media["media-1"] = png_bytes

    outcome = await dispatcher.dispatch(
        _event(DocumentContent(mime_type="image/png", file_name="cat.png"))
    )

    assert outcome == "sticker"
    assert [msg.kind for msg in backend.sent] == ["sticker"]


@pytest.mark.anyio
@pytest.mark.parametrize(
    "content",
    [
        VideoContent(is_loop_playback=False, mime_type="video/mp4"),
        VideoContent(is_loop_playback=True, mime_type="video/mp4"),
        DocumentContent(mime_type="video/mp4", file_name="clip.mp4"),
    ],
)
async def test_video_becomes_looping_clip(bot_config, sleeps, content) -> None:
    backend, dispatcher, _ = await _harness(bot_config, sleeps)
    backend.media["media-1"] = VIDEO

    outcome = await dispatcher.dispatch(_event(content))

    assert outcome == "clip"
    assert len(backend.sent) == 1
    sent = backend.sent[0]
    assert sent.kind == "video"
    assert sent.loop_playback is True
    assert sent.data == VIDEO
    assert sleeps.delays == []


@pytest.mark.anyio
async def test_other_documents_are_ignored(bot_config, sleeps) -> None:
    backend, dispatcher, _ = await _harness(bot_config, sleeps)

    outcome = await dispatcher.dispatch(
        _event(DocumentContent(mime_type="application/pdf", file_name="doc.pdf"))
    )

    assert outcome == "ignored"
    assert backend.sent == []


@pytest.mark.anyio
async def test_unrecognized_content_is_ignored(bot_config, sleeps) -> None:
    backend, dispatcher, _ = await _harness(bot_config, sleeps)

    outcome = await dispatcher.dispatch(_event(UnrecognizedContent("pollCreationMessage")))

    assert outcome == "ignored"
    assert backend.sent == []


@pytest.mark.anyio
async def test_inbound_sticker_gets_canned_reply(bot_config, sleeps) -> None:
    backend, dispatcher, _ = await _harness(bot_config, sleeps)

    outcome = await dispatcher.dispatch(_event(StickerContent(is_animated=True)))

    assert outcome == "sticker_reply"
    assert backend.texts() == [TextCommandResponder().sticker_reply()]
    assert backend.download_calls == []


@pytest.mark.anyio
async def test_text_goes_through_responder(bot_config, sleeps) -> None:
    backend, dispatcher, _ = await _harness(bot_config, sleeps)

    outcome = await dispatcher.dispatch(_event(TextContent("  PING ")))

    assert outcome == "text"
    assert backend.texts() == [PING_TEXT]


@pytest.mark.anyio
async def test_undecodable_image_gets_one_apology_without_retry(bot_config, sleeps) -> None:
    backend, dispatcher, _ = await _harness(bot_config, sleeps)
    backend.media["media-1"] = b"this is not an image"

    outcome = await dispatcher.dispatch(_event(ImageContent()))

    assert outcome == "failed"
    assert backend.texts() == [TextCommandResponder().sticker_failed]
    assert len(backend.download_calls) == 1
    assert sleeps.delays == []


@pytest.mark.anyio
async def test_sticker_download_failure_apologizes(bot_config, sleeps) -> None:
    backend, dispatcher, _ = await _harness(bot_config, sleeps)
    backend.media["media-1"] = MediaDownloadError("Could not download media")

    outcome = await dispatcher.dispatch(_event(ImageContent()))

    assert outcome == "failed"
    assert backend.texts() == [TextCommandResponder().sticker_failed]


@pytest.mark.anyio
async def test_sticker_send_failure_apologizes(bot_config, sleeps, png_bytes) -> None:
    backend, dispatcher, _ = await _harness(bot_config, sleeps)
    backend.media["media-1"] = png_bytes
    backend.send_failures["sticker"] = [RuntimeError("upload rejected")]

    outcome = await dispatcher.dispatch(_event(ImageContent()))

    assert outcome == "failed"
    assert [msg.kind for msg in backend.sent] == ["text"]


@pytest.mark.anyio
async def test_sticker_retry_is_configurable(bot_config, sleeps, png_bytes) -> None:
    retry = dataclasses.replace(bot_config.retry, sticker_max_attempts=2)
    backend, dispatcher, _ = await _harness(bot_config, sleeps, retry=retry)
    backend.media["media-1"] = [RuntimeError("network"), png_bytes]

    outcome = await dispatcher.dispatch(_event(ImageContent()))

    assert outcome == "sticker"
    assert sleeps.delays == [2.0]
    assert [msg.kind for msg in backend.sent] == ["sticker"]


@pytest.mark.anyio
async def test_clip_recovers_after_transient_failures(bot_config, sleeps) -> None:
    backend, dispatcher, _ = await _harness(bot_config, sleeps)
    backend.media["media-1"] = [
        MediaDownloadError("timeout"),
        MediaDownloadError("timeout"),
        VIDEO,
    ]

    outcome = await dispatcher.dispatch(_event(VideoContent()))

    assert outcome == "clip"
    assert sleeps.delays == [2.0, 4.0]
    assert [msg.kind for msg in backend.sent] == ["video"]


@pytest.mark.anyio
async def test_clip_exhaustion_sends_single_generic_apology(bot_config, sleeps) -> None:
    backend, dispatcher, _ = await _harness(bot_config, sleeps)
    backend.media["media-1"] = RuntimeError("server unavailable")

    outcome = await dispatcher.dispatch(_event(VideoContent()))

    assert outcome == "failed"
    assert len(backend.download_calls) == 3
    assert sleeps.delays == [2.0, 4.0]
    assert backend.texts() == [TextCommandResponder().clip_failed]


@pytest.mark.anyio
async def test_oversized_clip_gets_size_apology(bot_config, sleeps) -> None:
    backend, dispatcher, _ = await _harness(
        bot_config, sleeps, sticker_options=StickerOptions(max_bytes=64)
    )
    backend.media["media-1"] = VIDEO

    outcome = await dispatcher.dispatch(_event(VideoContent()))

    assert outcome == "failed"
    assert backend.texts() == [TextCommandResponder(bot_config.media).clip_too_large]
    assert [msg.kind for msg in backend.sent] == ["text"]


@pytest.mark.anyio
@pytest.mark.parametrize(
    "message",
    ["Bad MAC", "failed to decrypt message", "Unsupported state or unable to authenticate data"],
)
async def test_clip_decrypt_failure_uses_decrypt_apology(bot_config, sleeps, message) -> None:
    backend, dispatcher, _ = await _harness(bot_config, sleeps)
    backend.media["media-1"] = RuntimeError(message)

    outcome = await dispatcher.dispatch(_event(VideoContent()))

    assert outcome == "failed"
    assert backend.texts() == [TextCommandResponder().clip_decrypt_failed]


@pytest.mark.anyio
async def test_clip_send_failure_is_retried(bot_config, sleeps) -> None:
    backend, dispatcher, _ = await _harness(bot_config, sleeps)
    backend.media["media-1"] = VIDEO
    backend.send_failures["video"] = [RuntimeError("upload failed")]

    outcome = await dispatcher.dispatch(_event(VideoContent()))

    assert outcome == "clip"
    assert sleeps.delays == [2.0]
    assert len(backend.download_calls) == 2


@pytest.mark.anyio
async def test_apology_failure_is_swallowed(bot_config, sleeps) -> None:
    backend, dispatcher, _ = await _harness(bot_config, sleeps)
    backend.media["media-1"] = b"garbage"
    backend.send_failures["text"] = [RuntimeError("socket closed")]

    outcome = await dispatcher.dispatch(_event(ImageContent()))

    assert outcome == "failed"
    assert backend.sent == []


@pytest.mark.anyio
async def test_dispatch_without_session_fails_quietly(bot_config, sleeps) -> None:
    backend, dispatcher, _ = await _harness(bot_config, sleeps, open_session=False)

    outcome = await dispatcher.dispatch(_event(ImageContent()))

    assert outcome == "failed"
    assert backend.sent == []


@pytest.mark.anyio
async def test_run_consumes_queue_in_order(bot_config, sleeps, png_bytes) -> None:
    backend, dispatcher, queue = await _harness(bot_config, sleeps)
    backend.media["img"] = png_bytes
    backend.media["vid"] = VIDEO

    queue.put_nowait(_event(TextContent("ping"), message_id="a"))
    queue.put_nowait(_event(ImageContent(), ref="img", message_id="b"))
    queue.put_nowait(_event(VideoContent(), ref="vid", message_id="c"))

    consumer = asyncio.create_task(dispatcher.run(queue))
    try:
        await asyncio.wait_for(queue.join(), timeout=10)
    finally:
        consumer.cancel()

    assert [msg.kind for msg in backend.sent] == ["text", "sticker", "video"]


def test_decrypt_pattern_follows_cause_chain() -> None:
    try:
        try:
            raise ValueError("HMAC verification failed")
        except ValueError as inner:
            raise MediaDownloadError("Could not download media") from inner
    except MediaDownloadError as exc:
        assert is_decrypt_error(exc)

    assert not is_decrypt_error(RuntimeError("connection reset"))
