import asyncio, json

import pytest

from forge.errors import InvalidProjectId
from forge.models import FileRecord
from forge.store import (PROJECT_ID_RE, ProjectLocks, clean_markdown, generate_project_id,
                         project_path, save_files, strip_markdown_artifacts,
                         validate_project_id, write_readme)


@pytest.mark.parametrize("project_id", ["project-1712-abcd", "demo_app", "A1"])
def test_valid_project_ids(project_id):
    assert validate_project_id(project_id) == project_id


@pytest.mark.parametrize("project_id", ["", "../escape", "a/b", "x" * 65, "white space", None])
def test_invalid_project_ids(project_id):
    with pytest.raises(InvalidProjectId):
        validate_project_id(project_id)


def test_generated_ids_are_valid_and_unique():
    ids = {generate_project_id() for _ in range(20)}
    assert len(ids) == 20
    assert all(PROJECT_ID_RE.match(i) for i in ids)


def test_project_path_stays_under_root(tmp_path):
    assert project_path(tmp_path, "p1") == tmp_path / "p1"
    with pytest.raises(InvalidProjectId):
        project_path(tmp_path, "..")


def test_save_files_skips_unsafe_paths(tmp_path):
    saved = save_files(tmp_path / "p1", [
        FileRecord("src/components/Nav.tsx", "export {}\n"),
        FileRecord("../outside.txt", "nope"),
        FileRecord("index.html", "<div id=root></div>\n"),
    ])
    assert saved == ["src/components/Nav.tsx", "index.html"]
    assert (tmp_path / "p1/src/components/Nav.tsx").read_text() == "export {}\n"
    assert not (tmp_path / "outside.txt").exists()


def test_readme_lists_files(tmp_path):
    fp = write_readme(tmp_path, "p1", ["package.json", "src/App.tsx"])
    text = fp.read_text()
    assert text.startswith("# Generated Project: p1")
    assert "- src/App.tsx" in text
    assert "- Total files: 2" in text
    assert "npm run dev" in text


def test_config_file_cut_at_markdown(tmp_path, write):
    write("p/package.json", '```json\n{"name": "x"}\n```\n\n## Notes\n- run npm install\n')
    fixed = strip_markdown_artifacts(tmp_path / "p")
    assert fixed == ["package.json"]
    assert json.loads((tmp_path / "p/package.json").read_text()) == {"name": "x"}


def test_source_files_only_lose_fences(tmp_path, write):
    write("p/src/App.tsx", "```tsx\n/**\n * App root\n */\nexport default function App() {}\n```\n")
    write("p/src/keep.ts", "const h = '# not a header'\n")
    fixed = strip_markdown_artifacts(tmp_path / "p")
    assert fixed == ["src/App.tsx"]
    assert (tmp_path / "p/src/App.tsx").read_text() == "/**\n * App root\n */\nexport default function App() {}\n"
    assert (tmp_path / "p/src/keep.ts").read_text() == "const h = '# not a header'\n"


def test_clean_markdown_leaves_clean_config_alone():
    assert clean_markdown('{"a": 1}\n', config=True) == '{"a": 1}\n'


def test_locks_are_per_project():
    locks = ProjectLocks()
    assert locks("a") is locks.get("a")
    assert locks("a") is not locks("b")


def test_lock_serializes_same_project():
    order = []

    async def job(locks, name):
        async with locks("p1"):
            order.append(f"{name}-start")
            await asyncio.sleep(0.01)
            order.append(f"{name}-end")

    async def scenario():
        locks = ProjectLocks()
        await asyncio.gather(job(locks, "save"), job(locks, "fix"))
    asyncio.run(scenario())
    assert order == ["save-start", "save-end", "fix-start", "fix-end"]
