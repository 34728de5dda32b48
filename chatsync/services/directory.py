"""
Conversation directory: deterministic ids for a pair of participants.
"""
from typing import Iterable, List, Optional, Tuple

from chatsync.models.profile import UserProfile

SEPARATOR = "_"


def conversation_id(a: str, b: str) -> str:
    """Return the conversation id shared by participants ``a`` and ``b``.

    Both sides compute the same value regardless of who initiates.
    """
    return SEPARATOR.join(sorted([a, b]))


def list_contacts(profiles: Iterable[UserProfile], me: str) -> List[Tuple[UserProfile, str]]:
    """Pair every other profile with its conversation id."""
    return [
        (profile, conversation_id(me, profile.uid))
        for profile in profiles
        if profile.uid != me
    ]


def other_participant(conversation: str, uid: str) -> Optional[str]:
    """Return the peer of ``uid`` in ``conversation``, or None if ``uid`` is not a participant.

    Identities may themselves contain the separator, so a candidate peer only
    counts when it maps back to the same conversation id.
    """
    candidates = []
    prefix, suffix = uid + SEPARATOR, SEPARATOR + uid
    if conversation.startswith(prefix):
        candidates.append(conversation[len(prefix):])
    if conversation.endswith(suffix):
        candidates.append(conversation[:-len(suffix)])
    for peer in candidates:
        if peer and conversation_id(uid, peer) == conversation:
            return peer
    return None
