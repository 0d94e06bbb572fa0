"""
Tests for agent file discovery and metadata parsing.
"""

import pytest

from task_viewer.agents import (
    AgentError,
    AgentNotFoundError,
    list_global_agents,
    list_project_agents,
    parse_agent_metadata,
    parse_bmad_agent_metadata,
    read_agent_file,
    write_agent_file,
)

CLAUDE_AGENT = """---
name: test-runner
description: >
  Runs the test suite
  and reports failures
tools: Read, Bash, Grep
color: green
---

You run tests.
"""

BMAD_AGENT = """# dev

```yaml
agent:
  name: James
  id: dev
  title: Full Stack Developer
  icon: "💻"
  whenToUse: Use for code implementation
persona:
  role: Expert engineer
```
"""


@pytest.fixture
def agent_root(tmp_path):
    claude_dir = tmp_path / ".claude" / "agents"
    claude_dir.mkdir(parents=True)
    (claude_dir / "test-runner.md").write_text(CLAUDE_AGENT, encoding="utf-8")
    (claude_dir / "notes.txt").write_text("ignored", encoding="utf-8")
    bmad_dir = tmp_path / ".bmad-core" / "agents"
    bmad_dir.mkdir(parents=True)
    (bmad_dir / "dev.md").write_text(BMAD_AGENT, encoding="utf-8")
    return tmp_path


class TestMetadata:

    def test_front_matter(self):
        metadata = parse_agent_metadata(CLAUDE_AGENT)

        assert metadata.name == "test-runner"
        assert metadata.description == "Runs the test suite and reports failures"
        assert metadata.tools == ["Read", "Bash", "Grep"]
        assert metadata.color == "green"

    def test_tools_as_list(self):
        content = "---\nname: a\ntools:\n  - Read\n  - Write\n---\nbody\n"
        assert parse_agent_metadata(content).tools == ["Read", "Write"]

    @pytest.mark.parametrize("content", ["", "no front matter", "---\n: [unclosed\n---\n"])
    def test_missing_or_invalid_front_matter(self, content):
        metadata = parse_agent_metadata(content)
        assert metadata.name == ""
        assert metadata.tools == []

    def test_bmad_block(self):
        metadata = parse_bmad_agent_metadata(BMAD_AGENT)

        assert metadata.is_bmad is True
        assert metadata.name == "James"
        assert metadata.id == "dev"
        assert metadata.title == "Full Stack Developer"
        assert metadata.when_to_use == "Use for code implementation"
        assert metadata.description == "Use for code implementation"

    def test_bmad_without_agent_block(self):
        metadata = parse_bmad_agent_metadata("```yaml\npersona: {}\n```")
        assert metadata.is_bmad is True
        assert metadata.name == ""


class TestDiscovery:

    def test_project_agents_from_both_directories(self, agent_root):
        agents = list_project_agents(agent_root)

        assert [(a.name, a.source) for a in agents] == [("test-runner.md", "claude"), ("dev.md", "bmad")]
        assert agents[1].metadata.name == "James"

    def test_global_agents(self, tmp_path):
        (tmp_path / "agents").mkdir()
        (tmp_path / "agents" / "reviewer.yaml").write_text("name: reviewer\n", encoding="utf-8")

        agents = list_global_agents(str(tmp_path))

        assert [a.name for a in agents] == ["reviewer.yaml"]
        assert agents[0].source == "global"

    def test_global_agents_without_folder(self):
        assert list_global_agents("") == []

    def test_missing_agent_directories(self, tmp_path):
        assert list_project_agents(tmp_path) == []


class TestReadWrite:

    def test_read(self, agent_root):
        agent = read_agent_file(agent_root, "dev.md")
        assert agent.source == "bmad"
        assert "Full Stack Developer" in agent.content

    def test_overwrite_existing(self, agent_root):
        write_agent_file(agent_root, "test-runner.md", "---\nname: renamed\n---\n")

        assert read_agent_file(agent_root, "test-runner.md").metadata.name == "renamed"

    def test_write_new_goes_to_claude_dir(self, tmp_path):
        agent = write_agent_file(tmp_path, "fresh.md", "hello")

        assert agent.source == "claude"
        assert (tmp_path / ".claude" / "agents" / "fresh.md").read_text(encoding="utf-8") == "hello"

    @pytest.mark.parametrize("name", ["../secrets.md", "sub/dev.md", "..", "dev.exe"])
    def test_rejects_non_bare_names(self, agent_root, name):
        with pytest.raises(AgentError):
            read_agent_file(agent_root, name)

    def test_missing_agent(self, agent_root):
        with pytest.raises(AgentNotFoundError):
            read_agent_file(agent_root, "ghost.md")
