from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from ...core.config import MediaConfig

USAGE_TEXT = """*WhatsApp Sticker Bot - Help*

*How to use:*
- Send any image and I will turn it into a sticker
- Send a video or GIF and I will send it back as a looping clip
- Images sent as documents work too

*Commands:*
- help / bantuan - this guide
- info - bot information
- ping - check that the bot is online"""

INFO_TEMPLATE = """*WhatsApp Sticker Bot - Info*

*Features:*
- Instant image to sticker conversion
- Video to looping clip

*Details:*
- Sticker size: {size}x{size}px
- Sticker format: WebP with transparent padding
- Maximum file size: {max_mb}MB"""

PING_TEXT = "Pong! The bot is online and ready to convert your images."
PROMPT_TEXT = (
    "Send me an image and I will turn it into a sticker, "
    "or a video for a looping clip. Type 'help' for more."
)
STICKER_REPLY_TEXT = (
    "Nice sticker! Send me an image and I will make one for you."
)
STICKER_FAILED_TEXT = (
    "Sorry, I could not turn that image into a sticker. "
    "Please try another image (JPEG, PNG or WebP)."
)
CLIP_FAILED_TEXT = "Sorry, I could not process that video. Please try again later."
CLIP_TOO_LARGE_TEMPLATE = (
    "Sorry, that video is too large. Please send one smaller than {max_mb}MB."
)
CLIP_DECRYPT_FAILED_TEXT = (
    "Sorry, I could not decrypt that video. "
    "Please send it again in a moment."
)


@dataclass(frozen=True)
class ResponderRule:
    keywords: tuple[str, ...]
    reply: str

    def matches(self, normalized: str) -> bool:
        return any(keyword in normalized for keyword in self.keywords)


def normalize_text(text: str) -> str:
    return text.strip().lower()


class TextCommandResponder:
    """Maps normalized inbound text to a canned reply; first rule wins."""

    def __init__(
        self,
        media: Optional[MediaConfig] = None,
        *,
        rules: Optional[Sequence[ResponderRule]] = None,
    ) -> None:
        size = media.sticker_size if media is not None else 512
        max_bytes = media.max_file_size if media is not None else 10 * 1024 * 1024
        max_mb = max_bytes // (1024 * 1024)
        info = INFO_TEMPLATE.format(size=size, max_mb=max_mb)
        self._clip_too_large = CLIP_TOO_LARGE_TEMPLATE.format(max_mb=max_mb)
        self._rules: tuple[ResponderRule, ...] = tuple(
            rules
            if rules is not None
            else (
                ResponderRule(("help", "bantuan"), USAGE_TEXT),
                ResponderRule(("info",), info),
                ResponderRule(("ping",), PING_TEXT),
            )
        )

    @property
    def rules(self) -> tuple[ResponderRule, ...]:
        return self._rules

    def reply_for(self, text: str) -> str:
        normalized = normalize_text(text)
        for rule in self._rules:
            if rule.matches(normalized):
                return rule.reply
        return PROMPT_TEXT

    def sticker_reply(self) -> str:
        return STICKER_REPLY_TEXT

    @property
    def sticker_failed(self) -> str:
        return STICKER_FAILED_TEXT

    @property
    def clip_failed(self) -> str:
        return CLIP_FAILED_TEXT

    @property
    def clip_too_large(self) -> str:
        return self._clip_too_large

    @property
    def clip_decrypt_failed(self) -> str:
        return CLIP_DECRYPT_FAILED_TEXT
