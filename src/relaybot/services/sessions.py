import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence

from ..errors import BackendError
from ..models import ModelRoster, Role, Session, Turn

logger = logging.getLogger(__name__)


class ConversationOpener(Protocol):
    def open_conversation(self, model: str, history: Sequence[Turn]): ...


@dataclass
class MigrationReport:
    """Outcome of rebinding every session to a new model."""

    model: str
    migrated: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)


class SessionStore:
    """In-process table of conversation sessions keyed by conversation id."""

    def __init__(
        self,
        roster: ModelRoster,
        backend: ConversationOpener,
        persona: str,
    ) -> None:
        self._roster = roster
        self._backend = backend
        self._persona = persona
        self._sessions: Dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._sessions

    def get(self, conversation_id: str) -> Optional[Session]:
        return self._sessions.get(conversation_id)

    def get_or_create(self, conversation_id: str) -> Session:
        """Return the session for ``conversation_id``, creating it on first use.

        The lookup and the insert happen without an await in between, so two
        messages racing for a new conversation always share one session.
        """
        session = self._sessions.get(conversation_id)
        if session is not None:
            return session

        model = self._roster.current
        history = [Turn(Role.SYSTEM, self._persona)]
        session = Session(
            conversation_id=conversation_id,
            bound_model=model,
            history=history,
            handle=self._backend.open_conversation(model, history),
        )
        self._sessions[conversation_id] = session
        logger.info("Created session %s on model %s", conversation_id, model)
        return session

    def replay_history(self, session: Session) -> List[Turn]:
        """Build the history sent ahead of the next user utterance.

        Keeps every turn in order with exactly one leading system turn. The
        user turn still awaiting its reply is left out: the pending call sends
        it itself.
        """
        turns = list(session.history)
        if session.pending is not None and turns and turns[-1] is session.pending:
            turns.pop()
        if not turns or turns[0].role is not Role.SYSTEM:
            turns.insert(0, Turn(Role.SYSTEM, self._persona))
        return turns

    def migrate_all(self, new_index: int) -> MigrationReport:
        """Rebind every session to the model at ``new_index`` of the roster.

        Best effort: a session whose new conversation cannot be opened keeps
        its current binding and is listed in the report. Runs without
        suspending, so no message is handled against a half-migrated table.
        """
        model = self._roster.models[new_index]
        report = MigrationReport(model=model)
        for conversation_id, session in list(self._sessions.items()):
            if session.bound_model == model:
                report.migrated.append(conversation_id)
                continue
            try:
                handle = self._backend.open_conversation(
                    model, self.replay_history(session)
                )
            except (BackendError, ValueError, TypeError) as e:
                logger.warning(
                    "Session %s stays on %s, migration to %s failed: %s",
                    conversation_id,
                    session.bound_model,
                    model,
                    e,
                )
                report.failed[conversation_id] = str(e)
                continue
            session.handle = handle
            session.bound_model = model
            report.migrated.append(conversation_id)

        logger.info(
            "Migrated %d session(s) to %s, %d failed",
            len(report.migrated),
            model,
            len(report.failed),
        )
        return report
