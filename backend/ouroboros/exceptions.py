"""
Failures raised by the access core.

Insufficient clearance is not an error: it comes back as a denied
AccessDecision or RenderedContent. Exceptions here signal bad data or an
illegal state transition, which callers surface as a 4xx response.
"""


class OuroborosError(Exception):
    """Base class for portal domain errors."""


class InvalidRule(OuroborosError, ValueError):
    """An access rule whose fields do not fit its access type."""


class ProposalStateError(OuroborosError):
    """A proposal cannot move to the requested state."""

    def __init__(self, message: str, proposal_id=None, project_id=None):
        super().__init__(message)
        self.proposal_id = proposal_id
        self.project_id = project_id


class AlreadyApproved(ProposalStateError):
    """The proposal was approved before; no second project may be created."""


class ProposalRejected(ProposalStateError):
    """A rejected proposal cannot be approved."""


class AlreadyExists(OuroborosError):
    """A row with the same unique name is already there."""
