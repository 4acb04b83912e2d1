"""Tests for related-file discovery."""

import pytest

from mcp_pair_review.analysis.context import ContextDiscovery
from mcp_pair_review.analysis.models import ChangedFile, RelatedReason


def write(root, relative, content=""):
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


@pytest.fixture
def js_project(tmp_path):
    """Small JS project with one changed file and its neighbours."""
    write(
        tmp_path,
        "src/app.js",
        "import { helper } from './utils';\n"
        "import cfg from '../config';\n"
        "const lodash = require('lodash');\n",
    )
    write(tmp_path, "src/utils.js", "export function helper() { return 1; }\n")
    write(tmp_path, "config/index.ts", "export default {};\n")
    write(tmp_path, "src/app.test.js", "import app from './app';\n")
    write(tmp_path, "src/main.js", "import app from './app';\napp.start();\n")
    write(tmp_path, "node_modules/pkg/index.js", "require('./app');\n")
    write(tmp_path, "package.json", '{"name": "demo"}\n')
    return tmp_path


@pytest.mark.asyncio
async def test_discovers_each_kind_of_related_file(js_project):
    related = await ContextDiscovery().discover(["src/app.js"], js_project)
    by_path = {r.path: r for r in related}

    assert by_path["src/utils.js"].reason == RelatedReason.IMPORT
    assert by_path["config/index.ts"].reason == RelatedReason.IMPORT
    assert by_path["src/app.test.js"].reason == RelatedReason.TEST
    assert by_path["src/main.js"].reason == RelatedReason.REVERSE_IMPORT
    assert by_path["package.json"].reason == RelatedReason.CONFIG
    assert by_path["package.json"].related_to is None
    assert by_path["src/utils.js"].related_to == "src/app.js"


@pytest.mark.asyncio
async def test_excludes_changed_files_packages_and_ignored_dirs(js_project):
    related = await ContextDiscovery().discover(["./src/app.js"], js_project)
    paths = [r.path for r in related]

    assert "src/app.js" not in paths
    assert not any(p.startswith("node_modules/") for p in paths)
    assert len(paths) == len(set(paths))


@pytest.mark.asyncio
async def test_content_is_loaded(js_project):
    related = await ContextDiscovery().discover(["src/app.js"], js_project)
    utils = next(r for r in related if r.path == "src/utils.js")

    assert "helper" in utils.content
    assert utils.line_count == 1


@pytest.mark.asyncio
async def test_reverse_match_limit(tmp_path):
    write(tmp_path, "lib/core.js", "export const x = 1;\n")
    for name in ["a", "b", "c"]:
        write(tmp_path, f"lib/{name}.js", "import { x } from './core';\n")

    discovery = ContextDiscovery(reverse_match_limit=2, config_files=[])
    related = await discovery.discover(["lib/core.js"], tmp_path)

    reverse = [r for r in related if r.reason == RelatedReason.REVERSE_IMPORT]
    assert len(reverse) == 2


@pytest.mark.asyncio
async def test_reverse_search_disabled(js_project):
    discovery = ContextDiscovery(reverse_match_limit=0)
    related = await discovery.discover(["src/app.js"], js_project)

    assert all(r.reason != RelatedReason.REVERSE_IMPORT for r in related)


@pytest.mark.asyncio
async def test_python_imports_and_tests(tmp_path):
    write(
        tmp_path,
        "pkg/service.py",
        "import os\nfrom .helpers import run\nimport pkg.models\n",
    )
    write(tmp_path, "pkg/__init__.py")
    write(tmp_path, "pkg/helpers.py", "def run():\n    pass\n")
    write(tmp_path, "pkg/models.py", "class Model:\n    pass\n")
    write(tmp_path, "tests/test_service.py", "def test_x():\n    pass\n")

    discovery = ContextDiscovery(config_files=[])
    related = await discovery.discover(["pkg/service.py"], tmp_path)
    by_path = {r.path: r.reason for r in related}

    assert by_path["pkg/helpers.py"] == RelatedReason.IMPORT
    assert by_path["pkg/models.py"] == RelatedReason.IMPORT
    assert by_path["tests/test_service.py"] == RelatedReason.TEST


@pytest.mark.asyncio
async def test_deleted_and_binary_changes_are_skipped(js_project):
    changed = [
        ChangedFile(path="src/app.js", is_deleted=True),
        ChangedFile(path="logo.png", is_binary=True),
    ]
    related = await ContextDiscovery(config_files=[]).discover(changed, js_project)

    assert related == []


@pytest.mark.asyncio
async def test_oversized_and_missing_files_skipped(tmp_path):
    write(tmp_path, "src/app.js", "import a from './big';\nimport b from './missing';\n")
    write(tmp_path, "src/big.js", "x\n" * 50)

    discovery = ContextDiscovery(max_file_lines=10, config_files=[])
    related = await discovery.discover(["src/app.js"], tmp_path)

    assert related == []


@pytest.mark.asyncio
async def test_changed_file_missing_from_disk(tmp_path):
    related = await ContextDiscovery(config_files=[]).discover(["gone.js"], tmp_path)
    assert related == []
