from typing import Callable, Iterable
from urllib.parse import quote

from config import SOURCE_TEMPLATES

SourceTemplate = Callable[[str], str]


def make_source(template: str) -> SourceTemplate:
    """Turns 'https://host/movie/{id}' into a content id -> embed URL function."""
    def build(content_id: str) -> str:
        return template.format(id=quote(str(content_id), safe=''))
    build.__name__ = f"source<{template}>"
    return build


def build_sources(templates: Iterable[str] = None) -> list[SourceTemplate]:
    """Sources in priority order; resolution stops at the first one yielding a manifest."""
    if templates is None:
        templates = SOURCE_TEMPLATES
    return [make_source(t) for t in templates]
