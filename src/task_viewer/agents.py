"""
Agent definition files.

Agents are markdown or YAML files under `<projectRoot>/.claude/agents`,
`<projectRoot>/.bmad-core/agents` and the global `<claudeFolderPath>/agents`.
Claude agents carry YAML front matter; BMAD agents embed a fenced
```yaml block with an `agent:` mapping.
"""

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .models import AgentInfo, AgentMetadata

logger = logging.getLogger(__name__)

AGENT_EXTENSIONS = (".md", ".yaml", ".yml")
CLAUDE_AGENTS_DIR = Path(".claude") / "agents"
BMAD_AGENTS_DIR = Path(".bmad-core") / "agents"

_FRONTMATTER = re.compile(r"\A---\s*\n(.*?)\n---\s*(?:\n|\Z)", re.DOTALL)
_YAML_BLOCK = re.compile(r"```yaml\s*\n(.*?)\n```", re.DOTALL)


class AgentError(Exception):
    pass


class AgentNotFoundError(AgentError):
    pass


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _parse_tools(value: Any) -> List[str]:
    """Tools may be written as "Read, Write" or as a YAML list."""
    if isinstance(value, str):
        return [tool.strip() for tool in value.split(",") if tool.strip()]
    if isinstance(value, list):
        return [str(tool).strip() for tool in value if str(tool).strip()]
    return []


def _safe_load(text: str) -> Optional[Dict[str, Any]]:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        logger.debug(f"Unparseable agent YAML: {e}")
        return None
    return data if isinstance(data, dict) else None


def parse_agent_metadata(content: str) -> AgentMetadata:
    """
    Parse the YAML front matter of a Claude agent file.

    Content without front matter, or with front matter that is not a YAML
    mapping, gives empty metadata.
    """
    if not content:
        return AgentMetadata()
    match = _FRONTMATTER.match(content)
    if not match:
        return AgentMetadata()
    data = _safe_load(match.group(1))
    if data is None:
        return AgentMetadata()

    color = data.get("color")
    return AgentMetadata(
        name=_as_text(data.get("name")),
        description=" ".join(_as_text(data.get("description")).split()),
        tools=_parse_tools(data.get("tools")),
        color=_as_text(color) or None,
    )


def parse_bmad_agent_metadata(content: str) -> AgentMetadata:
    """Parse the `agent:` mapping of the first ```yaml block in a BMAD agent file."""
    metadata = AgentMetadata(is_bmad=True)
    if not content:
        return metadata
    match = _YAML_BLOCK.search(content)
    if not match:
        return metadata
    data = _safe_load(match.group(1))
    agent = data.get("agent") if data else None
    if not isinstance(agent, dict):
        return metadata

    when_to_use = _as_text(agent.get("whenToUse"))
    return AgentMetadata(
        name=_as_text(agent.get("name")),
        id=_as_text(agent.get("id")) or None,
        title=_as_text(agent.get("title")) or None,
        icon=_as_text(agent.get("icon")) or None,
        when_to_use=when_to_use or None,
        description=when_to_use,
        is_bmad=True,
    )


def _is_agent_file(path: Path) -> bool:
    return path.is_file() and path.suffix.lower() in AGENT_EXTENSIONS


def list_agents(directory: Union[str, Path], source: str = "claude") -> List[AgentInfo]:
    """
    List the agent files in one directory, sorted by filename.

    A missing directory gives an empty list. A file that cannot be read is
    still listed, with `error` set.
    """
    directory = Path(directory)
    if not directory.is_dir():
        return []

    parser = parse_bmad_agent_metadata if source == "bmad" else parse_agent_metadata
    agents = []
    for path in sorted(directory.iterdir()):
        if not _is_agent_file(path):
            continue
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"Error reading agent file {path}: {e}")
            agents.append(AgentInfo(name=path.name, path=str(path), source=source, error=str(e)))
            continue
        agents.append(
            AgentInfo(
                name=path.name,
                path=str(path),
                content=content,
                source=source,
                metadata=parser(content),
            )
        )
    return agents


def list_project_agents(project_root: Union[str, Path]) -> List[AgentInfo]:
    root = Path(project_root).expanduser()
    return list_agents(root / CLAUDE_AGENTS_DIR, "claude") + list_agents(root / BMAD_AGENTS_DIR, "bmad")


def list_global_agents(claude_folder_path: Optional[str]) -> List[AgentInfo]:
    if not claude_folder_path:
        return []
    return list_agents(Path(claude_folder_path).expanduser() / "agents", "global")


def _validate_agent_name(name: str) -> None:
    if not name or name in (".", "..") or "/" in name or "\\" in name:
        raise AgentError(f"Invalid agent filename: {name!r}")
    if Path(name).suffix.lower() not in AGENT_EXTENSIONS:
        raise AgentError(f"Agent files must end with one of {list(AGENT_EXTENSIONS)}")


def find_project_agent(project_root: Union[str, Path], name: str) -> Path:
    """
    Locate a project agent file by bare filename.

    Raises:
        AgentError: If `name` is not a bare agent filename
        AgentNotFoundError: If neither agent directory holds it
    """
    _validate_agent_name(name)
    root = Path(project_root).expanduser()
    for directory in (CLAUDE_AGENTS_DIR, BMAD_AGENTS_DIR):
        candidate = root / directory / name
        if candidate.is_file():
            return candidate
    raise AgentNotFoundError(f"Agent not found: {name}")


def read_agent_file(project_root: Union[str, Path], name: str) -> AgentInfo:
    path = find_project_agent(project_root, name)
    source = "bmad" if path.parent.parent.name == ".bmad-core" else "claude"
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise AgentError(f"Unable to read agent {name}: {e}") from e
    parser = parse_bmad_agent_metadata if source == "bmad" else parse_agent_metadata
    return AgentInfo(name=name, path=str(path), content=content, source=source, metadata=parser(content))


def write_agent_file(project_root: Union[str, Path], name: str, content: str) -> AgentInfo:
    """
    Overwrite an existing project agent file, or create it under
    `.claude/agents` when it does not exist yet.
    """
    try:
        path = find_project_agent(project_root, name)
    except AgentNotFoundError:
        path = Path(project_root).expanduser() / CLAUDE_AGENTS_DIR / name
        path.parent.mkdir(parents=True, exist_ok=True)
    try:
        path.write_text(content, encoding="utf-8")
    except OSError as e:
        raise AgentError(f"Unable to write agent {name}: {e.strerror or e}") from e
    logger.info(f"Agent file saved: {path}")
    return read_agent_file(project_root, name)
