"""
URL and payload templating.

Request templates may contain markers that are resolved per iteration:

    :date:            current date of the context (strftime, see date_format)
    :page:            current page of the context
    :page(1,2,3):     static page enumeration, resolved to the current page
    :cinema.<field>:  attribute of the current cinema
    :movie.<field>:   attribute of the current movie
    :date_href:       href of the current date page
"""

import json
import re
from typing import Any
from typing import List
from typing import Optional

from showtime_crawler.context import Context
from showtime_crawler.models import RequestObject

DEFAULT_DATE_FORMAT = "%Y-%m-%d"

DATE_MARKER = re.compile(r":date:")
PAGE_LIST_MARKER = re.compile(r":page\(([^)]*)\):")
PAGE_MARKER = re.compile(r":page:")
ATTRIBUTE_MARKER = re.compile(r":(cinema|movie)\.([A-Za-z_][A-Za-z0-9_]*):")
DATE_HREF_MARKER = re.compile(r":date_?[hH]ref:")


def _dump(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def has_date_marker(request: RequestObject) -> bool:
    return bool(DATE_MARKER.search(request.url) or DATE_MARKER.search(_dump(request.post_data)))


def has_page_marker(request: RequestObject) -> bool:
    return bool(PAGE_LIST_MARKER.search(request.url) or PAGE_LIST_MARKER.search(_dump(request.post_data)))


def parse_static_pages(template: Any) -> Optional[List[str]]:
    """Return the pages listed in a ``:page(a,b,c):`` marker, if any."""
    if template is None:
        return None
    match = PAGE_LIST_MARKER.search(_dump(template))
    if not match:
        return None
    return [page.strip() for page in match.group(1).split(",") if page.strip()]


def _attribute(obj: Any, field: str) -> str:
    if obj is None:
        return ""
    if isinstance(obj, dict):
        value = obj.get(field)
    else:
        value = getattr(obj, field, None)
    return "" if value is None else str(value)


def evaluate_template(template: str, context: Context) -> str:
    """Resolve all markers of ``template`` against ``context``."""
    result = template
    if context.date is not None:
        date_format = context.date_format or DEFAULT_DATE_FORMAT
        result = DATE_MARKER.sub(context.date.strftime(date_format), result)
    if context.page is not None:
        page = str(context.page)
        result = PAGE_LIST_MARKER.sub(page, result)
        result = PAGE_MARKER.sub(page, result)
    if context.date_href is not None:
        result = DATE_HREF_MARKER.sub(context.date_href, result)

    def replace_attribute(match: "re.Match[str]") -> str:
        source = context.cinema if match.group(1) == "cinema" else context.movie
        return _attribute(source, match.group(2))

    return ATTRIBUTE_MARKER.sub(replace_attribute, result)


def _evaluate_value(value: Any, context: Context) -> Any:
    if isinstance(value, str):
        return evaluate_template(value, context)
    if isinstance(value, dict):
        return {key: _evaluate_value(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [_evaluate_value(item, context) for item in value]
    return value


def evaluate_request_object(request: RequestObject, context: Context) -> RequestObject:
    """Return a concrete request for the given context."""
    return RequestObject(
        url=evaluate_template(request.url, context),
        post_data=_evaluate_value(request.post_data, context),
    )
