"""
Results of a two-phase gated command.

``attempt()`` style service methods return either ``Applied`` (the action ran)
or ``NeedsAuthorization`` (nothing changed; a challenge was opened and the
caller must resubmit with the token returned by approving it).
"""
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class NeedsAuthorization:
    challenge: Any

    applied = False

    @property
    def challenge_id(self):
        return self.challenge.id


@dataclass(frozen=True)
class Applied:
    result: Any

    applied = True
