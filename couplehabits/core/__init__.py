"""couplehabits use cases.

Each use case validates its input, writes the Local Store and then queues
the mutation on the sync engine. Validation, authorization and lookup
errors are raised before anything is written or queued.

    from couplehabits.core import CreateGoal, TrackProgress
"""

from couplehabits.core.couples import CreateCouple, JoinCouple, generate_invite_code
from couplehabits.core.goals import ArchiveGoal, CreateGoal, UpdateGoal
from couplehabits.core.profiles import CreateUserProfile, UpdateUserProfile
from couplehabits.core.progress import TrackProgress, calculate_status

__all__ = [
    # Goals
    "CreateGoal",
    "UpdateGoal",
    "ArchiveGoal",
    # Progress
    "TrackProgress",
    "calculate_status",
    # Couples
    "CreateCouple",
    "JoinCouple",
    "generate_invite_code",
    # Profiles
    "CreateUserProfile",
    "UpdateUserProfile",
]
