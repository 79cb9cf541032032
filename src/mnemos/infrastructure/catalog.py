"""
Content catalog loader.

The catalog is a YAML file with four top-level sections:

    subjects:   [{id, name, parent}]
    cards:      [{id, subject, front, back, public, flagged, position, creator}]
    decks:      [{id, name, subjects: [...], cards: [...]}]
    learners:   [{id, tier, timezone}]

Loading fills an InMemoryStore (templates and learners) and a
HierarchyResolver (subject tree, card assignments and decks).
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml  # type: ignore
import yaml.constructor

from mnemos.application.hierarchy_resolver import HierarchyResolver
from mnemos.domain.errors import InvalidCatalog, MnemosError
from mnemos.domain.models import CardTemplate, Deck, Learner, Tier
from mnemos.infrastructure.adapters.memory_store import InMemoryStore

logger = logging.getLogger(__name__)

SECTIONS = ("subjects", "cards", "decks", "learners")


class UniqueKeyLoader(yaml.SafeLoader):
    """
    Safe YAML loader that forbids duplicate keys and records line numbers.
    """

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in seen:
                raise yaml.constructor.ConstructorError(
                    None, None, f"found duplicate key '{key}'", key_node.start_mark
                )
            seen.add(key)

        result = super().construct_mapping(node, deep)
        if isinstance(result, dict):
            result["__line__"] = node.start_mark.line + 1
        return result


@dataclass
class Catalog:
    subjects: list[tuple[str, str, str | None]] = field(default_factory=list)
    templates: list[CardTemplate] = field(default_factory=list)
    decks: list[Deck] = field(default_factory=list)
    learners: list[Learner] = field(default_factory=list)


def parse_catalog(text: str, source: str = "<catalog>") -> Catalog:
    """
    Parse catalog YAML into domain objects.

    Raises:
        InvalidCatalog: Malformed YAML, a duplicate key, or an entry without an id.
    """
    try:
        raw = yaml.load(text, Loader=UniqueKeyLoader) or {}
    except yaml.YAMLError as e:
        raise InvalidCatalog(f"{source}: {e}") from e
    if not isinstance(raw, dict):
        raise InvalidCatalog(f"{source}: top level must be a mapping of {', '.join(SECTIONS)}")

    unknown = sorted(k for k in raw if k not in SECTIONS and not k.startswith("__"))
    if unknown:
        logger.warning(f"{source}: ignoring unknown section(s) {', '.join(unknown)}")

    catalog = Catalog()
    for entry in _entries(raw, "subjects", source):
        subject_id = _require_id(entry, "subject", source)
        catalog.subjects.append(
            (subject_id, str(entry.get("name") or subject_id), _opt_str(entry.get("parent")))
        )

    for entry in _entries(raw, "cards", source):
        catalog.templates.append(
            CardTemplate(
                id=_require_id(entry, "card", source),
                subject_id=_opt_str(entry.get("subject")),
                front=str(entry.get("front", "")),
                back=str(entry.get("back", "")),
                is_public=bool(entry.get("public", True)),
                flagged_for_review=bool(entry.get("flagged", False)),
                position=int(entry.get("position", 0)),
                creator_id=_opt_str(entry.get("creator")),
            )
        )

    for entry in _entries(raw, "decks", source):
        catalog.decks.append(
            Deck(
                id=_require_id(entry, "deck", source),
                name=str(entry.get("name") or entry["id"]),
                subject_ids=frozenset(str(s) for s in entry.get("subjects") or ()),
                card_ids=frozenset(str(c) for c in entry.get("cards") or ()),
            )
        )

    for entry in _entries(raw, "learners", source):
        learner_id = _require_id(entry, "learner", source)
        try:
            tier = Tier(str(entry.get("tier", Tier.FREE.value)).lower())
        except ValueError:
            raise InvalidCatalog(
                f"{source}:{entry['__line__']}: learner {learner_id} has unknown tier "
                f"{entry.get('tier')!r}"
            ) from None
        catalog.learners.append(
            Learner(id=learner_id, tier=tier, timezone=_opt_str(entry.get("timezone")))
        )

    return catalog


def load_catalog(
    path: Path, store: InMemoryStore, resolver: HierarchyResolver
) -> Catalog:
    """Read a catalog file and install it into the store and resolver."""
    catalog = parse_catalog(path.read_text(encoding="utf-8"), source=str(path))
    install_catalog(catalog, store, resolver)
    logger.info(
        f"Loaded catalog {path}: {len(catalog.subjects)} subject(s), "
        f"{len(catalog.templates)} card(s), {len(catalog.decks)} deck(s), "
        f"{len(catalog.learners)} learner(s)"
    )
    return catalog


def install_catalog(catalog: Catalog, store: InMemoryStore, resolver: HierarchyResolver) -> None:
    for template in catalog.templates:
        store.put_template(template)
    for learner in catalog.learners:
        store.put_learner(learner)
    try:
        resolver.load(catalog.subjects, catalog.templates, catalog.decks)
    except MnemosError as e:
        raise InvalidCatalog(f"Catalog structure rejected: {e.message}") from e


def _entries(raw: dict[str, Any], section: str, source: str) -> list[dict[str, Any]]:
    entries = raw.get(section) or []
    if not isinstance(entries, list) or not all(isinstance(e, dict) for e in entries):
        raise InvalidCatalog(f"{source}: section '{section}' must be a list of mappings")
    return entries


def _require_id(entry: dict[str, Any], kind: str, source: str) -> str:
    value = entry.get("id")
    if value is None or str(value).strip() == "":
        raise InvalidCatalog(f"{source}:{entry.get('__line__', '?')}: {kind} entry has no id")
    return str(value)


def _opt_str(value: Any) -> str | None:
    return None if value is None else str(value)
