"""
Fault containment for code that parses untrusted datagrams.

A policy is a plain callable: policy(fn, *args) runs fn(*args). The
containing policy turns any unexpected exception into MalformedFrameError
so one hostile datagram cannot take down a whole search; the propagating
policy lets the original exception through, which is what you want when
debugging a decoder.

Policies are passed to the query clients explicitly. Selecting one by name
is done once, from configuration.
"""

import logging

from mastersteam.errors import MastersteamError, MalformedFrameError

logger = logging.getLogger(__name__)


def contain_faults(fn, *args, **kwargs):
    """Run fn, converting unexpected exceptions into MalformedFrameError."""
    try:
        return fn(*args, **kwargs)
    except MastersteamError:
        raise
    except Exception as e:
        logger.debug(f"Contained fault in {getattr(fn, '__name__', fn)}: {e!r}", exc_info=True)
        raise MalformedFrameError(f"undecodable response ({type(e).__name__}: {e})") from e


def propagate_faults(fn, *args, **kwargs):
    """Run fn and let every exception through untouched."""
    return fn(*args, **kwargs)


FAULT_POLICIES = {
    'contain': contain_faults,
    'propagate': propagate_faults,
}

DEFAULT_FAULT_POLICY = contain_faults


def get_fault_policy(name: str):
    """
    Look up a policy by its configuration name.

    Raises:
        ValueError: Unknown policy name
    """
    try:
        return FAULT_POLICIES[name.strip().lower()]
    except KeyError:
        raise ValueError(
            f"Unknown fault policy {name!r}, expected one of: {', '.join(FAULT_POLICIES)}"
        ) from None
