"""
Unit tests for core/search.py
"""
import pytest

from core.ontology import NodeType
from core.search import search_nodes
from tests.helpers import make_node


@pytest.fixture
def nodes():
    paper = make_node("Attention Is All You Need", NodeType.PAPER)
    paper.description = "Introduces the Transformer"
    return [
        make_node("Machine Learning", NodeType.CONCEPT),
        paper,
        make_node("ImageNet", NodeType.DATASET),
    ]


@pytest.mark.parametrize("query", ["", "   ", None])
def test_blank_query_returns_everything_in_order(nodes, query):
    assert search_nodes(nodes, query) == nodes


def test_matches_title_case_insensitively(nodes):
    assert [n.title for n in search_nodes(nodes, "imagenet")] == ["ImageNet"]


def test_matches_type(nodes):
    assert [n.title for n in search_nodes(nodes, "dataset")] == ["ImageNet"]


def test_matches_description(nodes):
    assert [n.id for n in search_nodes(nodes, "TRANSFORMER")] == [nodes[1].id]


def test_query_is_trimmed(nodes):
    assert [n.id for n in search_nodes(nodes, "  learning ")] == [nodes[0].id]


def test_query_does_not_span_fields(nodes):
    assert search_nodes(nodes, "need\npaper") == []
    assert search_nodes(nodes, "imagenet dataset") == []


def test_no_match(nodes):
    assert search_nodes(nodes, "quantum") == []


def test_search_does_not_mutate_input(nodes):
    before = list(nodes)
    search_nodes(nodes, "a")
    assert nodes == before
