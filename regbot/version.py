"""Version information. VCS values are injected through the environment at build time."""

import os

__version__ = "0.3.0"

VCS_REF = os.environ.get("REGBOT_VCS_REF", "unknown")
VCS_TAG = os.environ.get("REGBOT_VCS_TAG", "unknown")


def version_info() -> dict:
    return {
        "VCSRef": VCS_REF,
        "VCSTag": VCS_TAG,
        "Version": __version__,
    }
