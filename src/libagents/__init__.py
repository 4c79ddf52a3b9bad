"""
lib-agents: declarative agent packages for OpenCode.

Deploys agent definitions, tools, commands, prompts and skills into a
local OpenCode configuration tree and keeps them in sync with upstream.
Local edits are tracked, never silently overwritten, and every mutating
run can be rolled back.
"""

import os

__version__ = "0.1.0"
__author__ = "lib-agents contributors"

REPO_URL = os.environ.get(
    "LIB_AGENTS_REPO_URL", "https://github.com/kunallimaye/lib-agents.git"
)
