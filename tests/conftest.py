"""
Shared test fixtures and configuration for pytest.
"""

from pathlib import Path

import pytest

from importflow.config.settings import ImporterConfig
from importflow.processor.services import build_services
from importflow.records.store import InMemoryRecordStore

EPOCH_START = 1_700_000_000.0

CSV_CONTENT = "name,email,age\nAlice,alice@example.com,30\nBob,bob@example.com,25\n"

WXR_CONTENT = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"
    xmlns:excerpt="http://wordpress.org/export/1.2/excerpt/"
    xmlns:content="http://purl.org/rss/1.0/modules/content/"
    xmlns:wfw="http://wellformedweb.org/CommentAPI/"
    xmlns:dc="http://purl.org/dc/elements/1.1/"
    xmlns:wp="http://wordpress.org/export/1.2/">
<channel>
    <title>Example Blog</title>
    <link>https://blog.example.com</link>
    <wp:wxr_version>1.2</wp:wxr_version>
    <wp:author>
        <wp:author_id>1</wp:author_id>
        <wp:author_login><![CDATA[admin]]></wp:author_login>
        <wp:author_email><![CDATA[admin@example.com]]></wp:author_email>
        <wp:author_display_name><![CDATA[Site Admin]]></wp:author_display_name>
        <wp:author_first_name><![CDATA[Ada]]></wp:author_first_name>
        <wp:author_last_name><![CDATA[Admin]]></wp:author_last_name>
    </wp:author>
    <wp:category>
        <wp:term_id>2</wp:term_id>
        <wp:category_nicename><![CDATA[news]]></wp:category_nicename>
        <wp:category_parent><![CDATA[]]></wp:category_parent>
        <wp:cat_name><![CDATA[News]]></wp:cat_name>
    </wp:category>
    <wp:tag>
        <wp:term_id>3</wp:term_id>
        <wp:tag_slug><![CDATA[python]]></wp:tag_slug>
        <wp:tag_name><![CDATA[Python]]></wp:tag_name>
    </wp:tag>
    <item>
        <title>Hello World</title>
        <link>https://blog.example.com/hello-world</link>
        <dc:creator><![CDATA[admin]]></dc:creator>
        <guid isPermaLink="false">https://blog.example.com/?p=10</guid>
        <content:encoded><![CDATA[<p>Welcome to the blog.</p>]]></content:encoded>
        <excerpt:encoded><![CDATA[Welcome]]></excerpt:encoded>
        <wp:post_id>10</wp:post_id>
        <wp:post_date><![CDATA[2023-01-02 10:00:00]]></wp:post_date>
        <wp:post_date_gmt><![CDATA[0000-00-00 00:00:00]]></wp:post_date_gmt>
        <wp:post_name><![CDATA[hello-world]]></wp:post_name>
        <wp:status><![CDATA[publish]]></wp:status>
        <wp:post_parent>0</wp:post_parent>
        <wp:menu_order>0</wp:menu_order>
        <wp:post_type><![CDATA[post]]></wp:post_type>
        <category domain="category" nicename="news"><![CDATA[News]]></category>
        <category domain="post_tag" nicename="python"><![CDATA[Python]]></category>
        <wp:postmeta>
            <wp:meta_key><![CDATA[_edit_last]]></wp:meta_key>
            <wp:meta_value><![CDATA[1]]></wp:meta_value>
        </wp:postmeta>
        <wp:comment>
            <wp:comment_id>5</wp:comment_id>
            <wp:comment_author><![CDATA[Reader]]></wp:comment_author>
            <wp:comment_author_email><![CDATA[reader@example.com]]></wp:comment_author_email>
            <wp:comment_date><![CDATA[2023-01-03 09:00:00]]></wp:comment_date>
            <wp:comment_content><![CDATA[Nice post]]></wp:comment_content>
            <wp:comment_approved><![CDATA[1]]></wp:comment_approved>
            <wp:comment_parent>0</wp:comment_parent>
        </wp:comment>
    </item>
    <item>
        <title>About</title>
        <wp:post_id>11</wp:post_id>
        <wp:status><![CDATA[publish]]></wp:status>
        <wp:post_type><![CDATA[page]]></wp:post_type>
        <category domain="category" nicename="news"><![CDATA[News]]></category>
    </item>
    <item>
        <title>Broken item without an id</title>
    </item>
</channel>
</rss>
"""


class FakeClock:
    """Epoch clock that only moves when told to."""

    def __init__(self, start: float = EPOCH_START) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    """Default configuration rooted in a temporary data directory."""
    return ImporterConfig(data_dir=tmp_path / "data")


@pytest.fixture
def records():
    return InMemoryRecordStore()


@pytest.fixture
def make_services(settings, records, clock):
    """Build services after a test has adjusted ``settings``."""

    def factory(**overrides):
        return build_services(
            overrides.pop("settings", settings),
            records=overrides.pop("records", records),
            epoch_clock=clock,
            sleep=clock.advance,
            **overrides,
        )

    return factory


@pytest.fixture
def services(make_services):
    return make_services()


@pytest.fixture
def csv_file(tmp_path) -> Path:
    path = tmp_path / "people.csv"
    path.write_text(CSV_CONTENT, encoding="utf-8")
    return path


@pytest.fixture
def wxr_file(tmp_path) -> Path:
    path = tmp_path / "export.xml"
    path.write_text(WXR_CONTENT, encoding="utf-8")
    return path
