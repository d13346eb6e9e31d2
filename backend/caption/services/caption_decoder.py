"""
Caption payload decoder.

Supports three timed-text variants served by the upstream:

1. Legacy XML (default for track URLs):
    <transcript><text start="1.52" dur="2.3">Hello &amp;amp; welcome</text></transcript>

2. srv3 XML (fmt=srv3), offsets in milliseconds, text optionally split in <s>:
    <timedtext format="3"><body><p t="1520" d="2300"><s>Hello</s></p></body></timedtext>

3. json3 (fmt=json3):
    {"events": [{"tStartMs": 1520, "dDurationMs": 2300, "segs": [{"utf8": "Hello"}]}]}

The format is detected from the content. Missing durations default to 0,
unknown attributes are ignored, and cues with empty text or zero duration
are kept. Cue order is exactly the delivery order.
"""

import html
import json
import logging
import math
import re

from defusedxml import DefusedXmlException
from defusedxml import ElementTree
from xml.etree.ElementTree import Element, ParseError

from caption.errors import MalformedPayload
from caption.models.schemas import RawCaptionPayload, TranscriptCue

logger = logging.getLogger(__name__)

FORMATTING_TAGS = ["strong", "em", "b", "i", "mark", "small", "del", "ins", "sub", "sup"]

# Any markup tag
TAG_PATTERN = re.compile(r"<[^>]*>", re.IGNORECASE)

# Any tag except the formatting ones above
NON_FORMATTING_TAG_PATTERN = re.compile(
    r"<\/?(?!\/?(" + "|".join(FORMATTING_TAGS) + r")\b).*?\b>",
    re.IGNORECASE,
)

# Clock-style offsets: "01:02:03.450", "02:03.450", "03,450"
CLOCK_PATTERN = re.compile(r"^(?:(\d+):)?(?:(\d+):)?(\d+(?:[.,]\d+)?)$")


class CaptionDecoder:
    """
    Decoder for raw caption payloads.

    Example:
        decoder = CaptionDecoder()
        cues = decoder.decode(payload)
        for cue in cues:
            print(f"{cue.start:.2f}: {cue.text}")
    """

    def __init__(self, preserve_formatting: bool = False):
        """
        Initialize decoder.

        Args:
            preserve_formatting: Keep <b>, <i> and similar tags in cue text
        """
        self.preserve_formatting = preserve_formatting
        self._tag_regex = NON_FORMATTING_TAG_PATTERN if preserve_formatting else TAG_PATTERN

    def decode(self, payload: RawCaptionPayload) -> list[TranscriptCue]:
        """
        Decode a payload into ordered cues.

        Args:
            payload: Raw caption bytes for one track

        Returns:
            Cues in delivery order

        Raises:
            MalformedPayload: If the payload matches no known schema
        """
        content = payload.content.lstrip()
        language = payload.track.language_code

        if not content:
            raise MalformedPayload(f"Empty caption payload ({language})")

        try:
            if content.startswith(b"{"):
                cues = self._decode_json3(content)
            elif content.startswith(b"<"):
                cues = self._decode_xml(content)
            else:
                raise MalformedPayload(f"Unrecognized caption payload format ({language})")
        except MalformedPayload as e:
            logger.warning(f"Malformed payload ({language}, {payload.size} bytes): {e.message}")
            raise
        except (
            ParseError,
            DefusedXmlException,
            UnicodeDecodeError,
            json.JSONDecodeError,
            RecursionError,
        ) as e:
            logger.warning(f"Unparsable payload ({language}, {payload.size} bytes): {e}")
            raise MalformedPayload(
                f"Cannot parse caption payload ({language}): {e}",
                original_error=e,
            ) from e

        logger.debug(f"Decoded {len(cues)} cues ({language})")
        return cues

    # ═══════════════════════════════════════════════════════════════════════
    # XML variants
    # ═══════════════════════════════════════════════════════════════════════

    def _decode_xml(self, content: bytes) -> list[TranscriptCue]:
        root = ElementTree.fromstring(content)

        if root.tag == "transcript":
            return [
                self._cue(element, "start", "dur", scale=1.0)
                for element in root
                if element.tag == "text"
            ]

        if root.tag == "timedtext":
            body = root.find("body")
            if body is None:
                raise MalformedPayload("srv3 payload has no <body>")
            return [
                self._cue(element, "t", "d", scale=1000.0)
                for element in body
                if element.tag == "p"
            ]

        raise MalformedPayload(f"Unexpected root element <{root.tag}>")

    def _cue(self, element: Element, start_attr: str, dur_attr: str, scale: float) -> TranscriptCue:
        start = _parse_offset(element.get(start_attr), start_attr, scale, required=True)
        duration = _parse_offset(element.get(dur_attr), dur_attr, scale, required=False)
        raw_text = "".join(element.itertext())
        return TranscriptCue(start=start, duration=duration, text=self._clean(raw_text))

    # ═══════════════════════════════════════════════════════════════════════
    # json3
    # ═══════════════════════════════════════════════════════════════════════

    def _decode_json3(self, content: bytes) -> list[TranscriptCue]:
        data = json.loads(content.decode("utf-8"))
        if not isinstance(data, dict) or not isinstance(data.get("events"), list):
            raise MalformedPayload("json3 payload has no 'events' list")

        cues: list[TranscriptCue] = []
        for event in data["events"]:
            if not isinstance(event, dict):
                raise MalformedPayload("json3 event is not an object")
            # Window/style events carry no segments and are not cues
            if "segs" not in event:
                continue
            segs = event["segs"]
            if not isinstance(segs, list):
                raise MalformedPayload("json3 'segs' is not a list")

            start = _parse_offset(event.get("tStartMs"), "tStartMs", 1000.0, required=True)
            duration = _parse_offset(event.get("dDurationMs"), "dDurationMs", 1000.0, required=False)
            raw_text = "".join(
                str(seg.get("utf8", "")) for seg in segs if isinstance(seg, dict)
            )
            cues.append(TranscriptCue(start=start, duration=duration, text=self._clean(raw_text)))

        return cues

    def _clean(self, text: str) -> str:
        """Unescape entities (the upstream double-escapes) and strip markup."""
        text = html.unescape(text)
        text = self._tag_regex.sub("", text)
        return text.strip()


def _parse_offset(value, name: str, scale: float, required: bool) -> float:
    """
    Parse a timestamp attribute into seconds.

    Accepts plain numbers (divided by scale) and clock strings
    ("HH:MM:SS.mmm", which are always seconds-based).

    Raises:
        MalformedPayload: If a required value is missing, or any value is
            unparsable or negative
    """
    if value is None or value == "":
        if required:
            raise MalformedPayload(f"Missing required timestamp '{name}'")
        return 0.0

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value) / scale
    else:
        text = str(value).strip()
        try:
            seconds = float(text) / scale
        except ValueError:
            seconds = _parse_clock(text, name)

    if not math.isfinite(seconds) or seconds < 0:
        raise MalformedPayload(f"Invalid timestamp '{name}'={value!r}")
    return seconds


def _parse_clock(text: str, name: str) -> float:
    match = CLOCK_PATTERN.match(text)
    if not match:
        raise MalformedPayload(f"Invalid timestamp '{name}'={text!r}")

    first, second, secs = match.groups()
    if second is not None:
        hours, minutes = int(first), int(second)
    else:
        hours, minutes = 0, int(first or 0)
    return hours * 3600 + minutes * 60 + float(secs.replace(",", "."))


if __name__ == "__main__":
    """Run tests when executed directly."""
    from caption.models.schemas import CaptionTrackDescriptor

    track = CaptionTrackDescriptor(language_code="en", name="English", base_url="https://example.invalid")
    decoder = CaptionDecoder()

    print("Testing legacy XML...")
    xml = b'<transcript><text start="0" dur="1.5">Hi &amp;amp; bye</text><text start="2">x</text></transcript>'
    cues = decoder.decode(RawCaptionPayload(content=xml, track=track))
    assert [c.text for c in cues] == ["Hi & bye", "x"]
    assert cues[1].duration == 0.0
    print("  OK")

    print("Testing srv3...")
    srv3 = b'<timedtext format="3"><body><p t="1500" d="500"><s>a</s><s> b</s></p></body></timedtext>'
    cues = decoder.decode(RawCaptionPayload(content=srv3, track=track))
    assert cues[0].start == 1.5 and cues[0].text == "a b"
    print("  OK")

    print("Testing malformed...")
    try:
        decoder.decode(RawCaptionPayload(content=b'<transcript><text dur="1">x</text></transcript>', track=track))
        raise AssertionError("expected MalformedPayload")
    except MalformedPayload:
        print("  OK")

    print("\nAll decoder tests passed!")
