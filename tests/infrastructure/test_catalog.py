import pytest

from mnemos.application.hierarchy_resolver import HierarchyResolver
from mnemos.domain.errors import InvalidCatalog
from mnemos.domain.models import Tier
from mnemos.infrastructure.adapters.memory_store import InMemoryStore
from mnemos.infrastructure.catalog import load_catalog, parse_catalog

CATALOG = """\
subjects:
  - id: bio
    name: Biology
  - id: cell
    name: Cell
    parent: bio
cards:
  - id: c1
    subject: cell
    front: What is a cell?
    back: The unit of life.
    position: 2
  - id: c2
    subject: bio
    front: Hidden
    public: false
decks:
  - id: biology
    name: Biology
    subjects: [bio]
learners:
  - id: alice
  - id: kenji
    tier: PAID
    timezone: Asia/Tokyo
"""


def test_parse_catalog():
    catalog = parse_catalog(CATALOG)

    assert catalog.subjects == [("bio", "Biology", None), ("cell", "Cell", "bio")]
    c1, c2 = catalog.templates
    assert c1.subject_id == "cell"
    assert c1.back == "The unit of life."
    assert c1.position == 2
    assert not c2.is_public
    assert catalog.decks[0].subject_ids == frozenset({"bio"})

    alice, kenji = catalog.learners
    assert alice.tier == Tier.FREE
    assert alice.timezone is None
    assert kenji.tier == Tier.PAID
    assert kenji.timezone == "Asia/Tokyo"


def test_empty_catalog():
    catalog = parse_catalog("")
    assert catalog.templates == []
    assert catalog.subjects == []


def test_duplicate_key_rejected():
    text = "cards:\n  - id: c1\n    front: a\n    front: b\n"
    with pytest.raises(InvalidCatalog) as exc:
        parse_catalog(text)
    assert "found duplicate key 'front'" in exc.value.message


def test_missing_id_reports_line():
    text = "cards:\n  - id: c1\n  - front: orphan\n"
    with pytest.raises(InvalidCatalog) as exc:
        parse_catalog(text, source="deck.yaml")
    assert exc.value.message == "deck.yaml:3: card entry has no id"


def test_unknown_tier():
    with pytest.raises(InvalidCatalog, match="unknown tier"):
        parse_catalog("learners:\n  - id: alice\n    tier: platinum\n")


def test_section_must_be_list():
    with pytest.raises(InvalidCatalog, match="must be a list"):
        parse_catalog("cards:\n  id: c1\n")


def test_top_level_must_be_mapping():
    with pytest.raises(InvalidCatalog, match="top level"):
        parse_catalog("- just\n- a list\n")


def test_broken_yaml():
    with pytest.raises(InvalidCatalog):
        parse_catalog("cards:\n  - id: c1\n   front: bad indent\n")


def test_unknown_section_warns(caplog):
    parse_catalog("notes: []\n")
    assert "ignoring unknown section(s) notes" in caplog.text


def test_load_catalog_installs(tmp_path):
    path = tmp_path / "catalog.yaml"
    path.write_text(CATALOG, encoding="utf-8")
    store = InMemoryStore()
    resolver = HierarchyResolver()

    load_catalog(path, store, resolver)

    assert resolver.resolve_deck_membership("bio") == {"c1", "c2"}
    assert resolver.deck_members("biology") == {"c1", "c2"}
    assert resolver.get_subject("cell").path == "bio.cell"
    assert "kenji" in store._learners
    assert "c1" in store._templates


def test_unknown_parent_rejected(tmp_path):
    path = tmp_path / "catalog.yaml"
    path.write_text("subjects:\n  - id: cell\n    parent: nowhere\n", encoding="utf-8")
    with pytest.raises(InvalidCatalog, match="Catalog structure rejected"):
        load_catalog(path, InMemoryStore(), HierarchyResolver())
