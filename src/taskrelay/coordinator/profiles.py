"""Phase profiles: which roles run, and in which order."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class PhaseProfile:
    """Roles for one orchestration style.

    ``verify_role`` runs once after the implementer (``None`` skips it).
    ``review_role`` produces the verdict and is re-run after every fix.
    """

    name: str
    verify_role: str | None
    review_role: str
    fix_role: str = "fixer"

    @property
    def roles(self) -> tuple[str, ...]:
        roles = ["implementer"]
        if self.verify_role:
            roles.append(self.verify_role)
        roles += [self.review_role, self.fix_role]
        return tuple(roles)


NORMAL_PROFILE = PhaseProfile("normal", verify_role="tester", review_role="reviewer")
SIMPLE_PROFILE = PhaseProfile("simple", verify_role=None, review_role="verifier")

_PROFILES = {p.name: p for p in (NORMAL_PROFILE, SIMPLE_PROFILE)}


def get_profile(name: str) -> PhaseProfile:
    try:
        return _PROFILES[name.lower()]
    except KeyError:
        raise ValueError(f"Unknown phase profile: {name}") from None
