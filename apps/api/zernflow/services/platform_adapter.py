"""Adapt rich message content to what each platform can render.

Facebook/Instagram: quick replies, buttons and generic-template carousels.
Telegram: buttons become an inline keyboard, quick replies a one-time reply keyboard.
Everything else (X, Bluesky, Reddit): numbered text options.
"""

import re

from zernflow.db.enums import Platform
from zernflow.schemas.flow import CarouselElement, MessageContent
from zernflow.services.messaging_provider import OutboundMessage

META_PLATFORMS = {Platform.FACEBOOK.value, Platform.INSTAGRAM.value}
TEXT_ONLY_PLATFORMS = {Platform.TWITTER.value, Platform.BLUESKY.value, Platform.REDDIT.value}

_LEADING_NUMBER_RE = re.compile(r"^\s*(\d+)")


def is_text_only(platform: str | None) -> bool:
    return platform not in META_PLATFORMS and platform != Platform.TELEGRAM.value


def _attachments(content: MessageContent) -> list[dict]:
    if content.image_url:
        return [{"type": "image", "url": content.image_url}]
    return []


def _button_dict(button) -> dict:
    return button.model_dump(exclude_none=True)


def adapt_message(content: MessageContent, platform: str | None) -> OutboundMessage:
    if platform in META_PLATFORMS:
        return _adapt_for_meta(content)
    if platform == Platform.TELEGRAM.value:
        return _adapt_for_telegram(content)
    return _adapt_for_text_only(content)


def _adapt_for_meta(content: MessageContent) -> OutboundMessage:
    message = OutboundMessage(text=content.text, attachments=_attachments(content))

    # Carousel wins over buttons and quick replies
    if content.carousel and content.carousel.elements:
        message.template = {
            "type": "generic",
            "elements": [
                {
                    "title": element.title,
                    "subtitle": element.subtitle,
                    "imageUrl": element.image_url,
                    "buttons": [_button_dict(button) for button in element.buttons],
                }
                for element in content.carousel.elements
            ],
        }
        return message

    if content.buttons:
        message.buttons = [_button_dict(button) for button in content.buttons]
    if content.quick_replies:
        message.quick_replies = [qr.model_dump() for qr in content.quick_replies]
    return message


def _adapt_for_telegram(content: MessageContent) -> OutboundMessage:
    if content.carousel and content.carousel.elements:
        return _carousel_to_text(content.carousel.elements, content)

    message = OutboundMessage(text=content.text, attachments=_attachments(content))
    if content.buttons:
        keyboard = []
        for button in content.buttons:
            key = {"text": button.title}
            if button.type == "url":
                key["url"] = button.url
            else:
                key["callbackData"] = button.payload
            keyboard.append([key])
        message.reply_markup = {"type": "inline_keyboard", "keyboard": keyboard}
    elif content.quick_replies:
        message.reply_markup = {
            "type": "reply_keyboard",
            "keyboard": [[{"text": qr.title}] for qr in content.quick_replies],
            "oneTime": True,
        }
    return message


def _adapt_for_text_only(content: MessageContent) -> OutboundMessage:
    if content.carousel and content.carousel.elements:
        return _carousel_to_text(content.carousel.elements, content)

    text = content.text
    options = content.buttons or content.quick_replies
    if options:
        options_list = "\n".join(f"{i + 1}. {option.title}" for i, option in enumerate(options))
        text = f"{text}\n\n{options_list}" if text else options_list
    return OutboundMessage(text=text, attachments=_attachments(content))


def _carousel_to_text(
    elements: list[CarouselElement], content: MessageContent
) -> OutboundMessage:
    cards = []
    for i, element in enumerate(elements):
        card = f"{i + 1}. {element.title}"
        if element.subtitle:
            card += f"\n   {element.subtitle}"
        for button in element.buttons:
            if button.type == "url" and button.url:
                card += f"\n   {button.title}: {button.url}"
            else:
                card += f"\n   {button.title}"
        cards.append(card)

    body = "\n\n".join(cards)
    text = f"{content.text}\n\n{body}" if content.text else body
    return OutboundMessage(text=text, attachments=_attachments(content))


def numbered_options(content: MessageContent) -> list[dict]:
    """Options a text-only platform renders as a numbered list, in order."""
    if content.carousel and content.carousel.elements:
        return []
    if content.buttons:
        return [
            {"title": button.title, "payload": None if button.type == "url" else button.payload}
            for button in content.buttons
        ]
    return [{"title": qr.title, "payload": qr.payload} for qr in content.quick_replies]


def parse_numbered_response(text: str | None, options: list[dict]) -> str | None:
    """Map a reply like "2" back to the payload of the second option."""
    if not text or not options:
        return None
    match = _LEADING_NUMBER_RE.match(text)
    if not match:
        return None
    number = int(match.group(1))
    if number < 1 or number > len(options):
        return None
    return options[number - 1].get("payload")
