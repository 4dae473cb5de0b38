"""Error presenter: show a labelled error block in place of a graph."""

from __future__ import annotations

import html
import logging
from typing import Union

from .errors import RenderFailure
from .mount import MountPoint

__all__ = ["present_error", "error_markup", "UNEXPECTED_MESSAGE"]

logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())


UNEXPECTED_MESSAGE = "Unexpected error - see the log for details"


def error_markup(message: str) -> str:
    """Return the HTML error block for ``message`` (escaped)."""
    return (
        '<div class="graph-error">'
        "<strong>Graph Error: </strong>"
        f"<span>{html.escape(message)}</span>"
        "</div>"
    )


def present_error(failure: Union[RenderFailure, str], mount: MountPoint) -> str:
    """Replace the content of ``mount`` with an error block.

    Parameters
    ----------
    failure : RenderFailure or str
        What went wrong. A plain string is shown as-is. Failures that are not
        user-facing are replaced by a generic message and logged in full.
    mount : MountPoint
        Where the error block goes.

    Returns
    -------
    str
        The message that was shown.
    """
    if isinstance(failure, str):
        message = failure
    elif failure.user_facing:
        message = failure.message
    else:
        exc = failure.exc
        logger.error(
            "Unexpected error while rendering graph block %r: %s",
            mount.block_id,
            failure.message,
            exc_info=(type(exc), exc, exc.__traceback__) if exc is not None else None,
        )
        message = UNEXPECTED_MESSAGE
    mount.show_error(error_markup(message))
    return message
