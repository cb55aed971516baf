"""Message content blocks.

Broadcast and step messages store an ordered list of blocks as JSON
(camelCase keys, LINE-like shape). Each stored dict is parsed into one of
the block dataclasses below; every consumer dispatches on the concrete
class and rejects anything else.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Union

logger = logging.getLogger(__name__)

POSTBACK_ACTION_CUSTOM = "custom"
IMAGE_ALT_TEXT = "Image message"


@dataclass(frozen=True)
class CustomActions:
    """What happens when a user taps a rich image block."""

    tag_ids: tuple[int, ...] = ()
    scenario_id: int | None = None
    reply_text: str | None = None
    redirect_url: str | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> "CustomActions | None":
        if not data:
            return None
        tag_ids = []
        for raw in data.get("tagIds") or []:
            try:
                tag_ids.append(int(raw))
            except (TypeError, ValueError):
                logger.warning(f"Ignoring non-numeric tag id in custom actions: {raw!r}")
        scenario_id = data.get("scenarioId")
        try:
            scenario_id = int(scenario_id) if scenario_id not in (None, "") else None
        except (TypeError, ValueError):
            logger.warning(f"Ignoring non-numeric scenario id in custom actions: {scenario_id!r}")
            scenario_id = None
        return cls(
            tag_ids=tuple(tag_ids),
            scenario_id=scenario_id,
            reply_text=data.get("replyText") or None,
            redirect_url=data.get("redirectUrl") or None,
        )

    def to_dict(self) -> dict:
        out: dict[str, Any] = {"tagIds": list(self.tag_ids)}
        if self.scenario_id is not None:
            out["scenarioId"] = self.scenario_id
        if self.reply_text:
            out["replyText"] = self.reply_text
        if self.redirect_url:
            out["redirectUrl"] = self.redirect_url
        return out

    @property
    def needs_postback(self) -> bool:
        """True when tapping must reach the webhook (tags, scenario or reply)."""
        return bool(self.tag_ids or self.scenario_id is not None or self.reply_text)


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ImageBlock:
    original_content_url: str
    preview_image_url: str
    link_url: str | None = None
    aspect_ratio: float | None = None  # width / height
    custom_actions: CustomActions | None = None


@dataclass(frozen=True)
class VideoBlock:
    original_content_url: str
    preview_image_url: str


@dataclass(frozen=True)
class FlexBlock:
    alt_text: str
    contents: dict = field(default_factory=dict)


ContentBlock = Union[TextBlock, ImageBlock, VideoBlock, FlexBlock]


def parse_block(data: dict) -> ContentBlock:
    """Parse one stored block dict; raises ValueError on unknown or malformed blocks."""
    if not isinstance(data, dict):
        raise ValueError(f"content block must be an object, got {type(data).__name__}")
    block_type = data.get("type")
    if block_type == "text":
        text = str(data.get("text") or "")
        if not text.strip():
            raise ValueError("text block is empty")
        return TextBlock(text=text)
    if block_type == "image":
        url = data.get("originalContentUrl")
        if not url:
            raise ValueError("image block has no originalContentUrl")
        ratio = data.get("aspectRatio")
        try:
            ratio = float(ratio) if ratio not in (None, "") else None
        except (TypeError, ValueError):
            ratio = None
        return ImageBlock(
            original_content_url=str(url),
            preview_image_url=str(data.get("previewImageUrl") or url),
            link_url=data.get("linkUrl") or None,
            aspect_ratio=ratio if ratio and ratio > 0 else None,
            custom_actions=CustomActions.from_dict(data.get("customActions")),
        )
    if block_type == "video":
        url = data.get("originalContentUrl")
        if not url:
            raise ValueError("video block has no originalContentUrl")
        return VideoBlock(
            original_content_url=str(url),
            preview_image_url=str(data.get("previewImageUrl") or url),
        )
    if block_type == "flex":
        return FlexBlock(
            alt_text=str(data.get("altText") or "Flex message"),
            contents=dict(data.get("contents") or {}),
        )
    raise ValueError(f"unknown content block type: {block_type!r}")


def parse_blocks(raw: str | list | None) -> list[ContentBlock]:
    """Parse stored content (JSON text or already-decoded list)."""
    if raw is None or raw == "":
        return []
    if isinstance(raw, str):
        raw = json.loads(raw)
    if not isinstance(raw, list):
        raise ValueError("content must be a list of blocks")
    return [parse_block(item) for item in raw]


def block_to_dict(block: ContentBlock) -> dict:
    """Storage form (camelCase)."""
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ImageBlock):
        out: dict[str, Any] = {
            "type": "image",
            "originalContentUrl": block.original_content_url,
            "previewImageUrl": block.preview_image_url,
        }
        if block.link_url:
            out["linkUrl"] = block.link_url
        if block.aspect_ratio:
            out["aspectRatio"] = block.aspect_ratio
        if block.custom_actions is not None:
            out["customActions"] = block.custom_actions.to_dict()
        return out
    if isinstance(block, VideoBlock):
        return {
            "type": "video",
            "originalContentUrl": block.original_content_url,
            "previewImageUrl": block.preview_image_url,
        }
    if isinstance(block, FlexBlock):
        return {"type": "flex", "altText": block.alt_text, "contents": block.contents}
    raise TypeError(f"unsupported content block: {type(block).__name__}")


def dump_blocks(blocks: Iterable[ContentBlock]) -> str:
    return json.dumps([block_to_dict(b) for b in blocks], ensure_ascii=False)


def postback_data(message_id: int, block_index: int) -> str:
    return f"action={POSTBACK_ACTION_CUSTOM}&mid={int(message_id)}&block={int(block_index)}"


def _flex_aspect_ratio(ratio: float | None) -> str | None:
    # Flex wants "width:height" with integer parts
    if not ratio:
        return None
    return f"{max(1, round(ratio * 1000))}:1000"


def _image_bubble(block: ImageBlock, action: dict) -> dict:
    image: dict[str, Any] = {
        "type": "image",
        "url": block.original_content_url,
        "size": "full",
        "aspectMode": "cover",
        "action": action,
    }
    ratio = _flex_aspect_ratio(block.aspect_ratio)
    if ratio:
        image["aspectRatio"] = ratio
    return {
        "type": "flex",
        "altText": IMAGE_ALT_TEXT,
        "contents": {
            "type": "bubble",
            "body": {
                "type": "box",
                "layout": "vertical",
                "contents": [image],
                "paddingAll": "0px",
            },
        },
    }


def to_wire(block: ContentBlock, *, message_id: int | None = None, index: int = 0) -> dict:
    """
    Build the LINE message object for one block.

    Image blocks become a tappable flex bubble when they carry custom
    actions (postback back to the webhook, requires `message_id`), a
    redirect URL, or a legacy `linkUrl`. Everything else maps 1:1.
    """
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ImageBlock):
        actions = block.custom_actions
        if actions is not None and actions.needs_postback and message_id is not None:
            return _image_bubble(block, {"type": "postback", "data": postback_data(message_id, index)})
        link = (actions.redirect_url if actions is not None else None) or block.link_url
        if link:
            return _image_bubble(block, {"type": "uri", "uri": link})
        return {
            "type": "image",
            "originalContentUrl": block.original_content_url,
            "previewImageUrl": block.preview_image_url,
        }
    if isinstance(block, VideoBlock):
        return {
            "type": "video",
            "originalContentUrl": block.original_content_url,
            "previewImageUrl": block.preview_image_url,
        }
    if isinstance(block, FlexBlock):
        return {"type": "flex", "altText": block.alt_text, "contents": block.contents}
    raise TypeError(f"unsupported content block: {type(block).__name__}")


def build_messages(blocks: Iterable[ContentBlock], *, message_id: int | None = None) -> list[dict]:
    return [to_wire(block, message_id=message_id, index=i) for i, block in enumerate(blocks)]


def preview_text(block: ContentBlock) -> str:
    """Short human-readable rendering (chat list, activity log)."""
    if isinstance(block, TextBlock):
        return block.text if len(block.text) <= 140 else (block.text[:137] + "...")
    if isinstance(block, ImageBlock):
        return "[Image]"
    if isinstance(block, VideoBlock):
        return "[Video]"
    if isinstance(block, FlexBlock):
        return f"[Flex] {block.alt_text}"
    raise TypeError(f"unsupported content block: {type(block).__name__}")


def find_custom_actions(blocks: list[ContentBlock], index: int | None = None) -> CustomActions | None:
    """
    Resolve the action bundle a postback refers to.

    With `index` the block at that position is used; without it (older
    postbacks) the first image block carrying actions wins.
    """
    candidates: Iterable[tuple[int, ContentBlock]] = enumerate(blocks)
    if index is not None:
        if not 0 <= index < len(blocks):
            return None
        candidates = [(index, blocks[index])]
    for _, block in candidates:
        if isinstance(block, ImageBlock):
            if block.custom_actions is not None:
                return block.custom_actions
        elif isinstance(block, (TextBlock, VideoBlock, FlexBlock)):
            continue
        else:
            raise TypeError(f"unsupported content block: {type(block).__name__}")
    return None
