"""Word-overlap similarity used to keep duplicate context out of history."""

from typing import Iterable

from context_memory.models.schemas import ContextItem, ContextType

# Texts at or above this length only dedupe by containment
MAX_SIMILARITY_LENGTH = 200


def _words(text: str) -> set:
    return set(text.lower().split())


def calculate_similarity(first: str, second: str) -> float:
    """Jaccard similarity of the lower-cased word sets of two texts (0-1)."""
    words1 = _words(first or "")
    words2 = _words(second or "")

    union = words1 | words2
    if not union:
        return 0.0
    return len(words1 & words2) / len(union)


def is_similar_to_existing_context(
    items: Iterable[ContextItem],
    content: str,
    type: ContextType,
    similarity_threshold: float = 0.8,
) -> bool:
    """Check whether ``content`` already exists, near enough, among ``items``.

    Only items of the same type are compared. An item matches when either
    text contains the other, or when both are short and their word overlap
    exceeds ``similarity_threshold``.
    """
    content_type = ContextType(type)
    for item in items:
        if item.type != content_type:
            continue

        item_content = item.content or ""
        if not item_content:
            continue

        if item_content in content or content in item_content:
            return True

        if (
            len(content) < MAX_SIMILARITY_LENGTH
            and len(item_content) < MAX_SIMILARITY_LENGTH
            and calculate_similarity(content, item_content) > similarity_threshold
        ):
            return True

    return False
