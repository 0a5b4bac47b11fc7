import pytest

from geosearch_agent.similarity.store import InMemoryEmbeddingStore, StoredChip


def square(west: float, south: float, size: float = 0.01) -> str:
    east, north = west + size, south + size
    return (
        f"POLYGON(({west} {south}, {east} {south}, {east} {north}, "
        f"{west} {north}, {west} {south}))"
    )


# A 5-chip strip along the northern waterfront, 0.01 degrees per chip.
CHIPS = [
    StoredChip("chip-a", [1.0, 0.0, 0.0], square(-122.45, 37.80), "2024-05-01 18:00:00"),
    StoredChip("chip-b", [0.9, 0.1, 0.0], square(-122.44, 37.80), "2024-05-01 18:00:00"),
    StoredChip("chip-c", [0.0, 1.0, 0.0], square(-122.43, 37.80), "2024-05-02 18:00:00"),
    StoredChip("chip-d", [0.5, 0.5, 0.0], square(-122.42, 37.80), "2024-05-02 18:00:00"),
    StoredChip("chip-e", [-1.0, 0.0, 0.0], square(-122.41, 37.80), "2024-05-03 18:00:00"),
]


@pytest.fixture
def chip_store() -> InMemoryEmbeddingStore:
    return InMemoryEmbeddingStore(list(CHIPS))


class ScriptedChatModel:
    """Chat model stand-in that replays prepared replies in order."""

    def __init__(self, replies: list) -> None:
        self.replies = list(replies)
        self.calls: list[list] = []
        self.bound_tools: list | None = None

    def bind_tools(self, tools: list) -> "ScriptedChatModel":
        self.bound_tools = tools
        return self

    def invoke(self, messages: list):
        self.calls.append(list(messages))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def scripted_model():
    return ScriptedChatModel
