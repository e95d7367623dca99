"""Render directory listings as WebDAV multistatus documents."""

from __future__ import annotations

import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import format_datetime
from typing import Sequence
from urllib.parse import quote

from .paths import base_name, display_name
from .storage import ObjectRecord

DAV_NAMESPACE = "DAV:"
STATUS_OK = "HTTP/1.1 200 OK"

ET.register_namespace("D", DAV_NAMESPACE)


@dataclass(frozen=True)
class DirectoryListing:
    prefix: str
    records: Sequence[ObjectRecord]


def _dav(tag: str) -> str:
    return f"{{{DAV_NAMESPACE}}}{tag}"


def http_date(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return format_datetime(value.astimezone(UTC), usegmt=True)


def object_href(key: str) -> str:
    # same escaping as JavaScript's encodeURIComponent, so "/" becomes %2F
    return "/" + quote(key, safe="!*'()")


def _append_response(parent: ET.Element, href: str) -> ET.Element:
    response = ET.SubElement(parent, _dav("response"))
    ET.SubElement(response, _dav("href")).text = href
    propstat = ET.SubElement(response, _dav("propstat"))
    prop = ET.SubElement(propstat, _dav("prop"))
    ET.SubElement(propstat, _dav("status")).text = STATUS_OK
    return prop


def render_multistatus(request_path: str, listing: DirectoryListing) -> bytes:
    """Build the multistatus body for ``listing``.

    The first response describes the collection itself and echoes
    ``request_path`` as its href; the rest follow the store's record order.
    """
    root = ET.Element(_dav("multistatus"))

    collection = _append_response(root, request_path)
    resource_type = ET.SubElement(collection, _dav("resourcetype"))
    ET.SubElement(resource_type, _dav("collection"))
    ET.SubElement(collection, _dav("displayname")).text = display_name(listing.prefix)

    for record in listing.records:
        prop = _append_response(root, object_href(record.key))
        ET.SubElement(prop, _dav("resourcetype"))
        ET.SubElement(prop, _dav("displayname")).text = base_name(record.key)
        ET.SubElement(prop, _dav("getcontentlength")).text = str(record.size)
        ET.SubElement(prop, _dav("getlastmodified")).text = http_date(record.last_modified)
        if record.content_type:
            ET.SubElement(prop, _dav("getcontenttype")).text = record.content_type
        if record.etag:
            ET.SubElement(prop, _dav("getetag")).text = f'"{record.etag}"'

    return ET.tostring(root, encoding="utf-8", xml_declaration=True)
