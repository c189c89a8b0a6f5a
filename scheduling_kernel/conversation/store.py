"""
Conversation Store — keyed records for live and archived thread states.

Updated by: Conversation Tracker
Queried by: Decision Orchestrator + API
"""

from typing import Dict, List, Optional

from scheduling_kernel.models.conversation import ConversationState


class ConversationStore:
    """
    In-memory conversation store.
    One live record per thread; closed records move to the archive and are never deleted.
    """

    def __init__(self):
        self._live: Dict[str, ConversationState] = {}
        self._archive: Dict[str, List[ConversationState]] = {}

    def get_live(self, thread_id: str) -> Optional[ConversationState]:
        return self._live.get(thread_id)

    def put_live(self, state: ConversationState) -> None:
        self._live[state.thread_id] = state

    def archive(self, thread_id: str) -> Optional[ConversationState]:
        """Move a thread's live record to the archive."""
        state = self._live.pop(thread_id, None)
        if state is not None:
            self._archive.setdefault(thread_id, []).append(state)
        return state

    def archived(self, thread_id: str) -> List[ConversationState]:
        return list(self._archive.get(thread_id, []))

    def live_states(self) -> List[ConversationState]:
        return list(self._live.values())

    def live_count(self) -> int:
        return len(self._live)
