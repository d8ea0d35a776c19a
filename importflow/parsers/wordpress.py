"""Streaming parser for WordPress WXR export files."""

from __future__ import annotations

import re
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional
from xml.etree.ElementTree import Element

import defusedxml.ElementTree as ET
from defusedxml import DefusedXmlException

from importflow.errors import ParsingError
from importflow.parsers.base import ParseStats, StreamingParser
from importflow.records.models import ImportRecord
from importflow.sources.resolver import SourceResolver
from importflow.staging.base import StagingStore

ZERO_DATE = "0000-00-00 00:00:00"

TABLE_SCHEMAS: dict[str, list[str]] = {
    "posts": [
        "post_id", "title", "link", "guid", "content", "excerpt", "status",
        "post_type", "post_date", "post_date_gmt", "post_modified",
        "post_modified_gmt", "post_name", "post_parent", "menu_order",
        "author_login", "comment_status", "ping_status", "post_password",
        "is_sticky",
    ],
    "postmeta": ["post_id", "meta_key", "meta_value"],
    "comments": [
        "comment_id", "post_id", "author", "author_email", "author_url",
        "author_ip", "date", "date_gmt", "content", "approved", "type",
        "parent", "user_id",
    ],
    "terms": ["term_id", "taxonomy", "slug", "name", "parent", "description"],
    "term_relationships": ["post_id", "term_id", "taxonomy"],
    "users": [
        "author_id", "login", "email", "display_name", "first_name", "last_name",
    ],
}

# Channel-level term elements and the taxonomy they describe
_CHANNEL_TERMS = {
    "wp:category": ("category", "wp:category_nicename", "wp:cat_name", "wp:category_parent", "wp:category_description"),
    "wp:tag": ("post_tag", "wp:tag_slug", "wp:tag_name", None, "wp:tag_description"),
}

_ITEM_ESTIMATE = re.compile(rb"<item[\s>]")


def qualified_name(tag: str) -> str:
    """
    Map ``{namespace}local`` onto the prefix WXR files conventionally use.

    Export versions 1.0 to 1.2 use different namespace URIs, so the prefix
    is derived from the URI shape rather than matched exactly.
    """
    if not tag.startswith("{"):
        return tag
    uri, _, local = tag[1:].partition("}")
    if "wordpress.org/export" in uri:
        prefix = "excerpt" if uri.rstrip("/").endswith("excerpt") else "wp"
    elif "purl.org/rss/1.0/modules/content" in uri:
        prefix = "content"
    elif "purl.org/dc/elements" in uri:
        prefix = "dc"
    elif "wellformedweb.org" in uri:
        prefix = "wfw"
    else:
        return local
    return f"{prefix}:{local}"


def term_id(taxonomy: str, slug: str) -> int:
    """Stable identifier for a taxonomy term."""
    return zlib.crc32(f"{taxonomy}|{slug}".encode("utf-8")) & 0xFFFFFFFF


def clean_date(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not value or value.startswith("0000-00-00"):
        return None
    return value


def estimate_items(path: Path, block_size: int = 1 << 20) -> int:
    """Count ``<item>`` openings without building any tree."""
    total = 0
    tail = b""
    with open(path, "rb") as f:
        while True:
            block = f.read(block_size)
            if not block:
                break
            data = tail + block
            total += len(_ITEM_ESTIMATE.findall(data))
            # Keep a short tail so a tag split across blocks is still seen once
            tail = data[-6:]
            total -= len(_ITEM_ESTIMATE.findall(tail))
    return total


@dataclass
class WordPressOptions:
    """Which WXR entities to extract."""

    extract_meta: bool = True
    extract_comments: bool = True
    extract_terms: bool = True
    extract_users: bool = True

    @classmethod
    def from_metadata(cls, metadata: dict[str, Any]) -> "WordPressOptions":
        return cls(
            extract_meta=bool(metadata.get("extract_meta", True)),
            extract_comments=bool(metadata.get("extract_comments", True)),
            extract_terms=bool(metadata.get("extract_terms", True)),
            extract_users=bool(metadata.get("extract_users", True)),
        )


class WordPressXmlStreamParser(StreamingParser):
    """
    Forward-only WXR parser.

    Only one ``<item>`` subtree is materialised at a time: it is converted
    into rows, then cleared and detached from the channel element. A bad
    item is recorded and skipped; XML that is not well-formed is fatal.
    """

    format_name = "wordpress_xml"

    def __init__(self, options: Optional[WordPressOptions] = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.options = options or WordPressOptions()
        self._seen_terms: set[int] = set()
        self._item_index = 0

    def parse(
        self,
        record: ImportRecord,
        staging: StagingStore,
        resolver: SourceResolver,
    ) -> ParseStats:
        path = resolver.resolve(record.source_type, record.source_detail)
        total = estimate_items(path) if self.estimate_total else None
        self._begin(staging, total)
        self._seen_terms = set()
        self._item_index = 0
        self.stats.bytes_processed = path.stat().st_size

        staging.create_many(TABLE_SCHEMAS)
        self.logger.info("parse_started", import_id=record.id, path=str(path), estimated_items=total)

        depth = 0
        channel: Optional[Element] = None
        try:
            for event, elem in ET.iterparse(str(path), events=("start", "end")):
                if event == "start":
                    depth += 1
                    if depth == 2 and qualified_name(elem.tag) == "channel":
                        channel = elem
                    continue

                if depth == 3 and channel is not None:
                    self._handle_channel_child(elem)
                    channel.remove(elem)
                depth -= 1
        except ET.ParseError as e:
            raise ParsingError(f"WordPress export is not well-formed XML: {e}") from e
        except DefusedXmlException as e:
            raise ParsingError(f"WordPress export uses forbidden XML constructs: {e}") from e

        if channel is None:
            raise ParsingError("No <channel> element found; not a WordPress export")

        return self._finish()

    def _handle_channel_child(self, elem: Element) -> None:
        name = qualified_name(elem.tag)
        if name == "item":
            self._item_index += 1
            self._advance()
            try:
                self._handle_item(elem)
            except (ValueError, TypeError, AttributeError) as e:
                self.stats.failed += 1
                self.stats.add_error(f"Item {self._item_index}: {e}")
                self.logger.warning("item_failed", item=self._item_index, error=str(e))
        elif name == "wp:author" and self.options.extract_users:
            self._handle_author(elem)
        elif name in _CHANNEL_TERMS and self.options.extract_terms:
            self._handle_channel_term(name, elem)
        elif name == "wp:term" and self.options.extract_terms:
            fields = self._children(elem)
            self._add_term(
                fields.get("wp:term_taxonomy") or "",
                fields.get("wp:term_slug") or "",
                fields.get("wp:term_name"),
                fields.get("wp:term_parent"),
                fields.get("wp:term_description"),
            )
        elem.clear()

    def _handle_item(self, item: Element) -> None:
        fields = self._children(item)
        post_id = (fields.get("wp:post_id") or "").strip()
        if not post_id:
            self.stats.skipped += 1
            self.stats.add_warning(f"Item {self._item_index} has no wp:post_id and was skipped")
            return

        self._emit("posts", {
            "post_id": post_id,
            "title": fields.get("title"),
            "link": fields.get("link"),
            "guid": fields.get("guid"),
            "content": fields.get("content:encoded"),
            "excerpt": fields.get("excerpt:encoded"),
            "status": fields.get("wp:status"),
            "post_type": fields.get("wp:post_type"),
            "post_date": clean_date(fields.get("wp:post_date")),
            "post_date_gmt": clean_date(fields.get("wp:post_date_gmt")),
            "post_modified": clean_date(fields.get("wp:post_modified")),
            "post_modified_gmt": clean_date(fields.get("wp:post_modified_gmt")),
            "post_name": fields.get("wp:post_name"),
            "post_parent": fields.get("wp:post_parent") or "0",
            "menu_order": fields.get("wp:menu_order") or "0",
            "author_login": fields.get("dc:creator"),
            "comment_status": fields.get("wp:comment_status"),
            "ping_status": fields.get("wp:ping_status"),
            "post_password": fields.get("wp:post_password"),
            "is_sticky": fields.get("wp:is_sticky") or "0",
        })
        self.stats.rows += 1

        for child in item:
            name = qualified_name(child.tag)
            if name == "wp:postmeta" and self.options.extract_meta:
                meta = self._children(child)
                if meta.get("wp:meta_key") is not None:
                    self._emit("postmeta", {
                        "post_id": post_id,
                        "meta_key": meta.get("wp:meta_key"),
                        "meta_value": meta.get("wp:meta_value"),
                    })
            elif name == "wp:comment" and self.options.extract_comments:
                self._handle_comment(post_id, child)
            elif name == "category" and self.options.extract_terms:
                self._handle_item_term(post_id, child)

    def _handle_comment(self, post_id: str, elem: Element) -> None:
        c = self._children(elem)
        self._emit("comments", {
            "comment_id": c.get("wp:comment_id"),
            "post_id": post_id,
            "author": c.get("wp:comment_author"),
            "author_email": c.get("wp:comment_author_email"),
            "author_url": c.get("wp:comment_author_url"),
            "author_ip": c.get("wp:comment_author_IP"),
            "date": clean_date(c.get("wp:comment_date")),
            "date_gmt": clean_date(c.get("wp:comment_date_gmt")),
            "content": c.get("wp:comment_content"),
            "approved": c.get("wp:comment_approved"),
            "type": c.get("wp:comment_type"),
            "parent": c.get("wp:comment_parent") or "0",
            "user_id": c.get("wp:comment_user_id") or "0",
        })

    def _handle_item_term(self, post_id: str, elem: Element) -> None:
        taxonomy = elem.get("domain") or "category"
        slug = elem.get("nicename") or (elem.text or "").strip().lower().replace(" ", "-")
        if not slug:
            return
        tid = self._add_term(taxonomy, slug, (elem.text or "").strip() or slug)
        self._emit("term_relationships", {
            "post_id": post_id,
            "term_id": tid,
            "taxonomy": taxonomy,
        })

    def _handle_channel_term(self, name: str, elem: Element) -> None:
        taxonomy, slug_key, name_key, parent_key, description_key = _CHANNEL_TERMS[name]
        fields = self._children(elem)
        slug = fields.get(slug_key) or ""
        self._add_term(
            taxonomy,
            slug,
            fields.get(name_key),
            fields.get(parent_key) if parent_key else None,
            fields.get(description_key),
        )

    def _add_term(
        self,
        taxonomy: str,
        slug: str,
        label: Optional[str],
        parent: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Optional[int]:
        if not taxonomy or not slug:
            return None
        tid = term_id(taxonomy, slug)
        if tid not in self._seen_terms:
            self._seen_terms.add(tid)
            self._emit("terms", {
                "term_id": tid,
                "taxonomy": taxonomy,
                "slug": slug,
                "name": label or slug,
                "parent": parent or None,
                "description": description or None,
            })
        return tid

    def _handle_author(self, elem: Element) -> None:
        a = self._children(elem)
        login = a.get("wp:author_login")
        if not login:
            self.stats.add_warning("Author without wp:author_login was skipped")
            return
        self._emit("users", {
            "author_id": a.get("wp:author_id"),
            "login": login,
            "email": a.get("wp:author_email"),
            "display_name": a.get("wp:author_display_name"),
            "first_name": a.get("wp:author_first_name"),
            "last_name": a.get("wp:author_last_name"),
        })

    @staticmethod
    def _children(elem: Element) -> dict[str, Optional[str]]:
        """First text value per direct child, keyed by prefixed name."""
        values: dict[str, Optional[str]] = {}
        for child in elem:
            name = qualified_name(child.tag)
            if name not in values:
                values[name] = child.text
        return values
