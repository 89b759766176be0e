"""Branch identifiers for parallel execution paths.

A fan-out mints a flow token shared by all of its children and names child
``i`` ``{parent}-{i}_{flow}``. The token tells sibling branches of one fork
apart from branches of an earlier iteration of the same fork (for example
after a rejection loop), and the prefix names the branch that forked.

    >>> child_branch_id("main", 1, "a1b2c3d4")
    'main-1_a1b2c3d4'
    >>> parent_branch_id("main-0_a1b2c3d4-1_ffee0011")
    'main-0_a1b2c3d4'
"""

from __future__ import annotations

import re
import uuid
from typing import Optional

from .constants import MAIN_BRANCH

_CHILD_SUFFIX = re.compile(r"-(\d+)_([0-9a-z]+)$")


def new_flow_id() -> str:
    return uuid.uuid4().hex[:8]


def child_branch_id(parent: str, index: int, flow_id: str) -> str:
    return f"{parent}-{index}_{flow_id}"


def flow_id(branch_id: str) -> Optional[str]:
    """Return the flow token of the innermost fork, or ``None`` for unforked branches."""
    match = _CHILD_SUFFIX.search(branch_id or "")
    return match.group(2) if match else None


def parent_branch_id(branch_id: str) -> str:
    """Return the branch that forked ``branch_id`` (``main`` stays ``main``)."""
    if not branch_id:
        return MAIN_BRANCH
    parent = _CHILD_SUFFIX.sub("", branch_id)
    return parent or MAIN_BRANCH


def in_flow(branch_id: str, flow: str) -> bool:
    """True for the children of fork ``flow`` and every branch nested below them."""
    pattern = rf"-\d+_{re.escape(flow)}(?:-|$)"
    return re.search(pattern, branch_id or "") is not None


def join_key(sync_node_id: str, branch_id: str) -> str:
    """Key of the join an arrival on ``branch_id`` takes part in at a sync node."""
    return f"{sync_node_id}:{flow_id(branch_id) or MAIN_BRANCH}"
