#!/usr/bin/env python3
"""
OPML import and export of feed subscriptions.
"""

from typing import Iterable, List
from xml.dom import minidom
import xml.etree.ElementTree as ET

from pydantic import ValidationError

from config import get_logger
from errors import OpmlError
from models import Feed, NewFeed
from repositories import FeedRegistry

# Module-specific logger
logger = get_logger("opml")


def _walk_outlines(outline: ET.Element, collector: List[ET.Element]) -> None:
    # Nested outlines are collected before their parent
    for child in outline.findall("outline"):
        _walk_outlines(child, collector)
    collector.append(outline)


def parse_opml(text: str) -> List[NewFeed]:
    """Extract one NewFeed per outline that carries an ``xmlUrl``."""
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise OpmlError(str(e)) from e

    if root.tag != "opml":
        raise OpmlError(f"unexpected root element <{root.tag}>")
    body = root.find("body")
    if body is None:
        raise OpmlError("missing <body>")

    outlines: List[ET.Element] = []
    for outline in body.findall("outline"):
        _walk_outlines(outline, outlines)

    new_feeds = []
    for outline in outlines:
        xml_url = outline.get("xmlUrl")
        if not xml_url:
            continue
        try:
            new_feeds.append(NewFeed(url=xml_url, name=outline.get("text") or outline.get("title") or ""))
        except ValidationError as e:
            raise OpmlError(f"invalid feed url {xml_url!r}") from e
    return new_feeds


async def import_opml(registry: FeedRegistry, text: str) -> List[Feed]:
    """Subscribe to every feed listed in an OPML document.

    The whole document is validated before anything is written.
    """
    new_feeds = parse_opml(text)
    feeds = [await registry.subscribe(new_feed) for new_feed in new_feeds]
    logger.info(f"{registry.user.username}: imported {len(feeds)} feeds from OPML")
    return feeds


def export_opml(feeds: Iterable[Feed], title: str = "nanoreader subscriptions") -> str:
    root = ET.Element("opml", version="2.0")
    head = ET.SubElement(root, "head")
    ET.SubElement(head, "title").text = title
    body = ET.SubElement(root, "body")
    for feed in feeds:
        ET.SubElement(body, "outline", {
            "text": feed.name,
            "title": feed.name,
            "type": "rss",
            "xmlUrl": feed.url,
        })
    return minidom.parseString(ET.tostring(root, encoding="utf-8")).toprettyxml(indent="  ")
