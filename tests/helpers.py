"""
Shared test helpers: node factory and collaborator fakes.
"""
from typing import List, Optional

from core.ontology import NodeType
from core.schemas import NodeData, Position, Recommendation


def make_node(title: str, node_type: NodeType = NodeType.CONCEPT, x: float = 0.0, y: float = 0.0, **kwargs) -> NodeData:
    return NodeData.create(
        title=title,
        type=node_type,
        position=Position(x=x, y=y),
        **kwargs
    )


def three_recommendations() -> List[Recommendation]:
    return [
        Recommendation(title="Attention", type="Concept", description="Core mechanism"),
        Recommendation(title="BERT Paper", type="Paper", description="Encoder model"),
        Recommendation(title="GLUE", type="Dataset", description="Benchmark suite"),
    ]


class FakeLLM:
    """
    Stands in for StructuredLLM.

    generate() returns `structured` (or raises `error`); complete_text()
    returns `text`. Every call is recorded.
    """

    def __init__(self, structured=None, text: str = "", error: Optional[Exception] = None):
        self.structured = structured
        self.text = text
        self.error = error
        self.calls: List[dict] = []

    def generate(self, system_prompt, user_prompt, schema, max_tokens=None):
        self.calls.append({
            "method": "generate",
            "system_prompt": system_prompt,
            "user_prompt": user_prompt,
            "schema": schema,
        })
        if self.error is not None:
            raise self.error
        return self.structured

    def complete_text(self, user_prompt, system_prompt=None, max_tokens=None):
        self.calls.append({
            "method": "complete_text",
            "system_prompt": system_prompt,
            "user_prompt": user_prompt,
            "max_tokens": max_tokens,
        })
        if self.error is not None:
            raise self.error
        return self.text


class FakeRecommender:
    """Async recommender returning fixed suggestions, or raising `error`."""

    def __init__(self, recommendations=None, error: Optional[Exception] = None):
        self.recommendations = list(recommendations or [])
        self.error = error
        self.calls = 0

    async def arecommend(self, anchor, nodes):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.recommendations)
