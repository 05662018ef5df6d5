from __future__ import annotations

import logging
import re
from dataclasses import replace
from typing import Dict, List, Optional

from bs4 import BeautifulSoup, Tag

from ..config import BASE_URL, MATTER_FILTER_URL
from ..models import DetailEntity, ListEntity
from ..utils.parsing import absolute_url, clean_text, normalize_hex_id

logger = logging.getLogger(__name__)

PAGINATION_SELECTOR = "div.pagination-wrapper > nav > div > a > span"
ARTICLE_SELECTOR = "div.post-feed article"
DEFAULT_DEVICE_TYPE = "Matter Device"

# Label fragments (lower-case) -> DetailEntity field. Order matters: first match wins.
_TABLE_FIELDS = [
    ("certification id", "certificate_id"),
    ("certificate id", "certificate_id"),
    ("certification date", "certification_date"),
    ("software version", "software_version"),
    ("hardware version", "hardware_version"),
    ("family variant sku", "family_variant_sku"),
    ("family sku", "family_sku"),
    ("firmware version", "firmware_version"),
    ("family id", "family_id"),
    ("tis/trp tested", "tis_trp_tested"),
    ("specification version", "specification_version"),
    ("transport interface", "transport_interface"),
    ("primary device type id", "primary_device_type_id"),
    ("device type", "device_type"),
    ("product type", "device_type"),
    ("vid", "vid"),
    ("vendor id", "vid"),
    ("pid", "pid"),
    ("product id", "pid"),
]

_DETAIL_LIST_FIELDS = [
    ("manufacturer", "manufacturer"),
    ("company", "manufacturer"),
    ("certified date", "certification_date"),
    ("spec version", "specification_version"),
    ("primary device", "primary_device_type_id"),
    ("tis", "tis_trp_tested"),
    ("trp", "tis_trp_tested"),
    ("category", "device_type"),
] + _TABLE_FIELDS

_CERT_PREFIX = re.compile(r"^certificate id:\s*", re.IGNORECASE)


class CsaIotAdapter:
    """Parser for the CSA-IoT certified product catalog (Matter filter)."""

    name = "csa-iot"
    domains = ["csa-iot.org", "www.csa-iot.org"]

    def __init__(self, filter_url: str = MATTER_FILTER_URL, base_url: str = BASE_URL) -> None:
        self.filter_url = filter_url
        self.base_url = base_url

    def list_page_url(self, page_number: int | None = None) -> str:
        if page_number is None:
            return self.filter_url
        return f"{self.filter_url}&paged={page_number}"

    # ---------- listing pages ----------

    def parse_total_pages(self, html: str) -> int:
        soup = BeautifulSoup(html, "html.parser")
        numbers = []
        for span in soup.select(PAGINATION_SELECTOR):
            text = span.get_text(strip=True)
            if text.isdigit() and int(text) > 0:
                numbers.append(int(text))
        return max(numbers, default=0)

    def count_items(self, html: str) -> int:
        return len(BeautifulSoup(html, "html.parser").select(ARTICLE_SELECTOR))

    def parse_list(self, html: str, page_number: int) -> List[ListEntity]:
        soup = BeautifulSoup(html, "html.parser")
        # The site lists newest first; index from the oldest so positions stay stable.
        articles = list(reversed(soup.select(ARTICLE_SELECTOR)))
        entities: List[ListEntity] = []
        for index, article in enumerate(articles):
            link = article.select_one("a[href]")
            if link is None:
                logger.debug("page %s item %s has no link; skipped", page_number, index)
                continue
            entities.append(
                ListEntity(
                    key=absolute_url(link["href"], self.base_url),
                    manufacturer=_text(article, "p.entry-company.notranslate"),
                    model=_text(article, "h3.entry-title"),
                    certificate_id=_certificate_id(article),
                    page_id=page_number,
                    index_in_page=index,
                )
            )
        return entities

    # ---------- detail pages ----------

    def parse_detail(self, html: str, entity: ListEntity) -> DetailEntity:
        soup = BeautifulSoup(html, "html.parser")
        fields: Dict[str, Optional[str]] = {}
        fields.update(_table_fields(soup))
        # The product details list is newer markup; let it win over the table.
        fields.update(_detail_list_fields(soup))

        title = _text(soup, "h1.entry-title") or _text(soup, "h1")
        model = entity.model or title or "Unknown Product"
        manufacturer = fields.pop("manufacturer", None) or entity.manufacturer or "Unknown"
        device_type = fields.pop("device_type", None) or DEFAULT_DEVICE_TYPE

        software = fields.get("firmware_version") or fields.get("software_version")
        fields["software_version"] = software
        fields["firmware_version"] = fields.get("firmware_version") or software
        fields["certificate_id"] = fields.get("certificate_id") or entity.certificate_id
        fields["vid"] = normalize_hex_id(fields.get("vid"))
        fields["pid"] = normalize_hex_id(fields.get("pid"))

        base = DetailEntity(**entity.to_dict())
        return replace(
            base,
            manufacturer=manufacturer,
            model=model,
            device_type=device_type,
            application_categories=_application_categories(soup, device_type),
            **fields,
        )


def _text(node: Tag, selector: str) -> Optional[str]:
    found = node.select_one(selector)
    return clean_text(found.get_text(" ")) if found is not None else None


def _certificate_id(article: Tag) -> Optional[str]:
    value = _text(article, "span.entry-cert-id") or _text(article, "p.entry-certificate-id")
    if value is None:
        return None
    return _CERT_PREFIX.sub("", value).strip() or None


def _match_field(label: str, mapping) -> Optional[str]:
    for fragment, field_name in mapping:
        if fragment in label:
            return field_name
    return None


def _table_fields(soup: BeautifulSoup) -> Dict[str, Optional[str]]:
    out: Dict[str, Optional[str]] = {}
    for row in soup.select(".product-certificates-table tr"):
        cells = row.find_all("td")
        if len(cells) < 2:
            continue
        label = (clean_text(cells[0].get_text(" ")) or "").lower()
        value = clean_text(cells[1].get_text(" "))
        field_name = _match_field(label, _TABLE_FIELDS)
        if field_name and value:
            out.setdefault(field_name, value)
    return out


def _detail_list_fields(soup: BeautifulSoup) -> Dict[str, Optional[str]]:
    out: Dict[str, Optional[str]] = {}
    for item in soup.select(".entry-product-details div ul li"):
        label_el = item.select_one("span.label")
        value_el = item.select_one("span.value")
        if label_el is None or value_el is None:
            continue
        label = (clean_text(label_el.get_text(" ")) or "").lower().rstrip(":")
        value = clean_text(value_el.get_text(" "))
        field_name = _match_field(label, _DETAIL_LIST_FIELDS)
        if field_name and value:
            out.setdefault(field_name, value)
    return out


def _application_categories(soup: BeautifulSoup, device_type: str) -> List[str]:
    categories: List[str] = []
    for heading in soup.find_all("h3"):
        if "Application Categories" not in heading.get_text():
            continue
        parent = heading.parent
        if parent is not None:
            for li in parent.select("ul li"):
                text = clean_text(li.get_text(" "))
                if text:
                    categories.append(text)
        break
    return categories or [device_type]
