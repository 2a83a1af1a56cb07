"""
LABBUDDY ASSISTANT - The Three LLM Collaborators

- RecommendationService: three suggested nodes for an anchor node
- AssistantService.ask: plain-text answer about the mind map
- AssistantService.describe: a 2-3 sentence description for a new node

All three go through StructuredLLM and raise CollaboratorError subclasses on
failure. The services never touch the graph store; staging and the HTTP
routes decide what to do with a failure.
"""
import asyncio
import json
import logging
import re
from typing import Any, Iterable, List, Optional, Sequence

import msgspec

from core.llm import ResponseFormatError, StructuredLLM, get_llm
from core.schemas import Recommendation, RecommendationsResponse

logger = logging.getLogger(__name__)


RECOMMENDATION_COUNT = 3
DESCRIPTION_MAX_TOKENS = 200

NODE_TYPES_TEXT = '"Concept", "Paper", "Dataset", "Tool", "Person", "Organization", "Event", "Method"'

PLAIN_TEXT_STYLE = (
    "RESPONSE STYLE: Reply in plain, human-readable text. Do NOT use markdown, "
    "asterisks, backticks, underscores, headings, or any special formatting. "
    "Avoid emojis and special symbols. Keep sentences concise and easy to scan."
)


def _as_context(obj: Any) -> Any:
    """Nodes may arrive as schema structs or as raw JSON dicts."""
    if isinstance(obj, msgspec.Struct):
        return msgspec.to_builtins(obj)
    if isinstance(obj, (list, tuple)):
        return [_as_context(o) for o in obj]
    return obj


def _dump(obj: Any) -> str:
    return json.dumps(_as_context(obj), indent=2, ensure_ascii=False)


def _title_of(node: Any) -> str:
    if isinstance(node, dict):
        return str(node.get("title", ""))
    return str(getattr(node, "title", ""))


# =============================================================================
# REPLY SANITIZER
# =============================================================================

_CODE_FENCE = re.compile(r"```[\s\S]*?```")
_BACKTICKS = re.compile(r"`+")
_STRONG = re.compile(r"\*\*|__")
_EMPHASIS = re.compile(r"\*|_")
_HEADING = re.compile(r"^\s*#{1,6}\s+", re.MULTILINE)
_BULLET = re.compile(r"^\s*[-\u2022]\s+", re.MULTILINE)
_DOUBLE_QUOTES = re.compile(r"[\u201c\u201d]")
_SINGLE_QUOTES = re.compile(r"[\u2018\u2019]")
_DASHES = re.compile(r"[\u2013\u2014]")
_TRAILING_SPACE = re.compile(r"\s+\n")


def clean_reply(text: str) -> str:
    """
    Turn a markdown-ish LLM reply into plain text.

    Drops code blocks and inline backticks, bold/italic markers, leading
    headings and bullets; normalizes typographic quotes and dashes; removes
    whitespace runs before line breaks.
    """
    text = _CODE_FENCE.sub(" ", text or "")
    text = _BACKTICKS.sub("", text)
    text = _STRONG.sub("", text)
    text = _EMPHASIS.sub("", text)
    text = _HEADING.sub("", text)
    text = _BULLET.sub("", text)
    text = _DOUBLE_QUOTES.sub('"', text)
    text = _SINGLE_QUOTES.sub("'", text)
    text = _DASHES.sub("-", text)
    text = _TRAILING_SPACE.sub("\n", text)
    return text.strip()


# =============================================================================
# RECOMMENDATIONS
# =============================================================================

class RecommendationService:
    """
    Asks the LLM for exactly RECOMMENDATION_COUNT suggested nodes.

    Extra suggestions are truncated; fewer is a ResponseFormatError. The
    suggestion `type` is left as the raw string, staging maps it.
    """

    def __init__(self, llm: Optional[StructuredLLM] = None):
        self._llm = llm

    @property
    def llm(self) -> StructuredLLM:
        return self._llm or get_llm()

    def _system_prompt(self, selected: Any, all_nodes: Sequence[Any]) -> str:
        intro = "You are an AI assistant helping a researcher expand their knowledge graph."
        if all_nodes:
            context = (
                f"{intro} Here is their current mind map:\n\n{_dump(list(all_nodes))}\n\n"
                f"The user has selected this node: {_dump(selected)}"
            )
        else:
            context = f"{intro} The user has selected this node: {_dump(selected)}"

        return (
            f"{context}\n\n"
            f"You must respond with exactly {RECOMMENDATION_COUNT} node recommendations. "
            "Each recommendation has:\n"
            "- title: A clear, concise title for the node\n"
            f"- type: One of {NODE_TYPES_TEXT}\n"
            "- description: How it relates to the selected node and the broader context\n"
            "- reasoning: Why this node would be valuable to add"
        )

    def _user_prompt(self, selected: Any) -> str:
        return (
            f'Based on the selected node "{_title_of(selected)}" and the current knowledge '
            f"graph, suggest {RECOMMENDATION_COUNT} new nodes that would be valuable to add. "
            "Consider:\n"
            "1. Direct connections to the selected node\n"
            "2. Gaps in the current knowledge graph\n"
            "3. Important concepts, papers, or datasets that would strengthen the research area\n"
            "4. Different types of nodes to create a well-rounded graph"
        )

    def recommend(self, selected: Any, all_nodes: Iterable[Any] = ()) -> List[Recommendation]:
        """
        Raises:
            CollaboratorError: The LLM failed or returned too few suggestions
        """
        all_nodes = list(all_nodes)
        response = self.llm.generate(
            system_prompt=self._system_prompt(selected, all_nodes),
            user_prompt=self._user_prompt(selected),
            schema=RecommendationsResponse,
        )
        recommendations = response.recommendations
        if len(recommendations) < RECOMMENDATION_COUNT:
            raise ResponseFormatError(
                f"Expected {RECOMMENDATION_COUNT} recommendations, got {len(recommendations)}"
            )
        if len(recommendations) > RECOMMENDATION_COUNT:
            logger.info(f"Truncating {len(recommendations)} recommendations to {RECOMMENDATION_COUNT}")
        return list(recommendations[:RECOMMENDATION_COUNT])

    async def arecommend(self, selected: Any, all_nodes: Iterable[Any] = ()) -> List[Recommendation]:
        """recommend() in a worker thread, so the event loop keeps serving."""
        return await asyncio.to_thread(self.recommend, selected, list(all_nodes))


# =============================================================================
# CHAT / DESCRIPTIONS
# =============================================================================

class AssistantService:
    """LabBuddy chat replies and node descriptions."""

    def __init__(self, llm: Optional[StructuredLLM] = None):
        self._llm = llm

    @property
    def llm(self) -> StructuredLLM:
        return self._llm or get_llm()

    def _system_prompt(self, nodes: Optional[Sequence[Any]]) -> str:
        if nodes:
            return (
                "You are LabBuddy, a helpful research assistant for a knowledge graph.\n"
                "Here is the relevant context from the user's mind map (nodes):\n\n"
                f"{_dump(list(nodes))}\n\n{PLAIN_TEXT_STYLE}"
            )
        return f"You are LabBuddy, a helpful research assistant.\n\n{PLAIN_TEXT_STYLE}"

    def ask(self, question: str, nodes: Optional[Sequence[Any]] = None) -> str:
        """
        Answer a question, optionally grounded in the given nodes.

        Raises:
            CollaboratorError: The LLM call failed
        """
        reply = self.llm.complete_text(
            user_prompt=question,
            system_prompt=self._system_prompt(nodes),
        )
        return clean_reply(reply) or "No response from the assistant"

    def describe(self, title: str, node_type: str) -> str:
        """
        A concise description for a node about to be created.

        Raises:
            CollaboratorError: The LLM call failed
        """
        prompt = (
            f"Generate a concise, informative description (2-3 sentences) for a "
            f'{node_type} node titled "{title}" in a research knowledge graph. '
            "Focus on what it is and why it's relevant."
        )
        return self.llm.complete_text(
            user_prompt=prompt,
            max_tokens=DESCRIPTION_MAX_TOKENS,
        ).strip()
