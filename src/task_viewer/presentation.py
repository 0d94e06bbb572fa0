"""
Presentation State Controller

UI-only state for the grouped task view: which story groups are expanded,
the active filters, the active tab and the selected task. Every operation
is a pure function returning a new state; nothing here is persisted, so a
reload starts from the default collapsed state.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .filters import filter_tasks, unique_story_keys
from .models import FilterState, StoryGroup, Task


class ViewTab(str, Enum):
    DASHBOARD = "dashboard"
    TASKS = "tasks"
    TABLE = "table"
    HISTORY = "history"
    ARCHIVE = "archive"
    AGENTS = "agents"
    SETTINGS = "settings"


@dataclass(frozen=True)
class ExpansionState:
    """Mapping of story key to expanded flag; absent keys are collapsed."""

    expanded: Mapping[str, bool] = field(default_factory=dict)


def is_expanded(state: ExpansionState, key: str) -> bool:
    return bool(state.expanded.get(key, False))


def toggle(state: ExpansionState, key: str) -> ExpansionState:
    """Flip one key; every other key keeps its value."""
    expanded = dict(state.expanded)
    expanded[key] = not is_expanded(state, key)
    return ExpansionState(expanded=expanded)


def expand_all(known_keys: Iterable[str]) -> ExpansionState:
    """
    Expand exactly the given keys.

    Callers pass the keys visible under the active filter; keys from an
    earlier filter are dropped rather than carried over.
    """
    return ExpansionState(expanded={key: True for key in known_keys})


def collapse_all() -> ExpansionState:
    return ExpansionState()


def expand_visible(tasks: Sequence[Task], filters: FilterState) -> ExpansionState:
    """Expand every story key present in the filtered task list."""
    return expand_all(unique_story_keys(filter_tasks(tasks, filters)))


def visible_rows(groups: Sequence[StoryGroup], state: ExpansionState) -> List[Union[StoryGroup, Task]]:
    """Accordion rows: each group header, followed by its tasks when expanded."""
    rows: List[Union[StoryGroup, Task]] = []
    for group in groups:
        rows.append(group)
        if is_expanded(state, group.key):
            rows.extend(group.tasks)
    return rows


@dataclass(frozen=True)
class ViewState:
    active_tab: ViewTab = ViewTab.DASHBOARD
    selected_task_id: Optional[str] = None
    filters: FilterState = field(default_factory=FilterState)
    expansion: ExpansionState = field(default_factory=ExpansionState)


def reduce(state: ViewState, action: Dict[str, Any], tasks: Sequence[Task] = ()) -> ViewState:
    """
    Apply one UI action to the view state.

    Supported action types:
        toggle       {"key": str}
        expand_all   expands the story keys visible under the current filters
                     over `tasks`, or the explicit {"keys": [...]} if given
        collapse_all
        set_filter   any of {"global_filter_text", "status_filter", "story_filter"}
        select_task  {"task_id": str | None}
        set_tab      {"tab": ViewTab | str}

    Raises:
        ValueError: For an unknown action type or invalid filter/tab value
    """
    kind = action.get("type")

    if kind == "toggle":
        return replace(state, expansion=toggle(state.expansion, action["key"]))

    if kind == "expand_all":
        if "keys" in action:
            return replace(state, expansion=expand_all(action["keys"]))
        return replace(state, expansion=expand_visible(tasks, state.filters))

    if kind == "collapse_all":
        return replace(state, expansion=collapse_all())

    if kind == "set_filter":
        updates = {
            name: action[name]
            for name in ("global_filter_text", "status_filter", "story_filter")
            if name in action
        }
        filters = FilterState(**{**state.filters.model_dump(), **updates})
        return replace(state, filters=filters)

    if kind == "select_task":
        return replace(state, selected_task_id=action.get("task_id"))

    if kind == "set_tab":
        return replace(state, active_tab=ViewTab(action["tab"]))

    raise ValueError(f"Unknown view action: {kind!r}")
