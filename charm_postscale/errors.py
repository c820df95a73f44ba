from __future__ import annotations

import traceback
from typing import Dict, Optional


class PostscaleError(Exception):
    """Base class for every error raised by this package."""


class PreconditionMismatch(PostscaleError, ValueError):
    """Pass-A and base images do not share the same dimensions."""


class MissingInputError(PostscaleError, ValueError):
    """A required job input was not supplied."""


class UpstreamDependencyError(PostscaleError):
    """Input retrieval or the removal collaborator failed."""


class TransientStatusError(PostscaleError):
    """Status sink is temporarily unavailable; safe to retry."""


class PostscaleSkipped(PostscaleError):
    """
    Non-fatal: the pipeline cannot rescale safely and falls back to pass-A.

    Never escapes `postscale_composite`; it is converted into a result.
    """

    outcome = "skipped"


class NoObjectFound(PostscaleSkipped):
    outcome = "no_object_found"


class OversizedRegion(PostscaleSkipped):
    outcome = "oversized_region"


class CollapsedAlpha(PostscaleSkipped):
    outcome = "collapsed_alpha"


def error_payload(err: BaseException, tb: Optional[str] = None) -> Dict[str, Optional[str]]:
    """JSON-serializable diagnostic: message, classification, trace."""
    if tb is None:
        tb = "".join(traceback.format_exception(type(err), err, err.__traceback__))
    return {
        "message": str(err) or type(err).__name__,
        "name": type(err).__name__,
        "stack": tb or None,
    }
