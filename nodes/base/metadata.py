import re
from collections.abc import Hashable, Mapping
from dataclasses import dataclass, field
from typing import Any

DEFAULT_ID = "node"
DEFAULT_NAME = "Node"
DEFAULT_CATEGORY = "utility"
DEFAULT_ICON = "code-2"
DEFAULT_VERSION = "1.0.0"
DEFAULT_AUTHOR = "Core Team"

_TOKEN_SPLIT = re.compile(r"[-_\s]+")


@dataclass(frozen=True)
class NodeMetadata:
    id: str
    name: str
    description: str
    category: str
    icon: str
    variant: str
    version: str
    author: str
    keywords: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    runtime: dict[str, Any] = field(default_factory=lambda: {"language": "python"})
    experimental: bool = False
    deprecated: bool = False
    documentation_url: str | None = None
    examples: tuple[dict[str, Any], ...] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "icon": self.icon,
            "variant": self.variant,
            "version": self.version,
            "author": self.author,
            "keywords": list(self.keywords),
            "tags": list(self.tags),
            "runtime": dict(self.runtime),
            "experimental": self.experimental,
            "deprecated": self.deprecated,
            "documentation_url": self.documentation_url,
            "examples": list(self.examples) if self.examples is not None else None,
        }


def title_case(value: str) -> str:
    """'csv-reader node' -> 'Csv Reader Node'. Other punctuation is left alone."""
    words = value.replace("-", " ").replace("_", " ").split(" ")
    return " ".join(word[:1].upper() + word[1:].lower() for word in words)


def _tokenize(*values: str) -> list[str]:
    tokens: list[str] = []
    for value in values:
        if not value:
            continue
        tokens.extend(t for t in _TOKEN_SPLIT.split(value.lower()) if t)
    return tokens


def _dedupe_preserve_order(items: list[Any]) -> list[Any]:
    result: list[Any] = []
    seen: set[Hashable] = set()
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        result.append(item)
    return result


def derive_keywords(node_id: str, name: str) -> list[str]:
    return _dedupe_preserve_order([t for t in _tokenize(node_id, name) if len(t) > 2])


def derive_tags(node_id: str, category: str) -> list[str]:
    tags = _tokenize(node_id)
    if category:
        tags.append(category)
    return _dedupe_preserve_order(tags)


def create_node_metadata(input: Mapping[str, Any]) -> NodeMetadata:
    """Normalize a descriptive record into NodeMetadata.

    Pure: the same input always yields the same metadata. Missing values get
    deterministic defaults; keywords and tags are derived from id, name and
    category unless supplied explicitly.
    """
    node_id = input.get("id", DEFAULT_ID)
    raw_name = input.get("name", DEFAULT_NAME)
    name = title_case(raw_name)
    category = input.get("category") or DEFAULT_CATEGORY

    keywords = input.get("keywords")
    if keywords is None:
        keywords = derive_keywords(node_id, raw_name)
    tags = input.get("tags")
    if tags is None:
        tags = derive_tags(node_id, category)

    examples = input.get("examples")

    return NodeMetadata(
        id=node_id,
        name=name,
        description=input.get("description", f"{title_case(str(node_id))} node"),
        category=category,
        icon=input.get("icon") or DEFAULT_ICON,
        variant=input.get("variant") or node_id,
        version=input.get("version") or DEFAULT_VERSION,
        author=input.get("author") or DEFAULT_AUTHOR,
        keywords=tuple(keywords),
        tags=tuple(tags),
        runtime=dict(input.get("runtime") or {"language": "python"}),
        experimental=bool(input.get("experimental", False)),
        deprecated=bool(input.get("deprecated", False)),
        documentation_url=input.get("documentation_url"),
        examples=tuple(examples) if examples is not None else None,
    )
