"""p2p_onboarding package root.

Onboard a client into P2P.org Superform custody:

- Deploy a 1-of-1 Safe multisig for the client
- Deploy and configure a Zodiac Roles modifier for the Safe
- Scope the P2P operator to the Superform deposit and withdraw calls only

See :py:class:`p2p_onboarding.onboarding.OnboardingClient`.
"""

import sys


#: Minimum required Python version to run this package
MIN_PYTHON_VERSION = (3, 10)


def _check_python_version():
    """Try early abort if the Python version is too old."""

    # Use Python tuple comparison for version numbers
    # https://stackoverflow.com/a/1093331/315168
    if sys.version_info < MIN_PYTHON_VERSION:
        raise RuntimeError(f"p2p-onboarding needs Python {MIN_PYTHON_VERSION[0]}.{MIN_PYTHON_VERSION[1]} or later")


_check_python_version()
