"""Architecture boundary tests — enforce the layering via import analysis.

These tests automatically scan every Python module in ledger_core and
verify that layer dependency rules are respected. They fail the build
on any violation.

Layers (inner → outer):
  domain  →  application  →  infrastructure

Dependency rules:
  domain/         → stdlib + domain only (NO application, infrastructure, config)
  application/    → stdlib + domain + application + config (NO infrastructure)
  infrastructure/ → stdlib + domain + config + SQLAlchemy (NO application)

The composition root (tests, or an embedding service) is the only place
where application services are wired to infrastructure adapters.
"""

from __future__ import annotations

import ast
from pathlib import Path

import pytest


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

_SRC_ROOT = Path(__file__).parent.parent / "src" / "ledger_core"
_DOMAIN_DIR = _SRC_ROOT / "domain"
_APPLICATION_DIR = _SRC_ROOT / "application"
_INFRASTRUCTURE_DIR = _SRC_ROOT / "infrastructure"

_LAYERS = {
    "domain": _DOMAIN_DIR,
    "application": _APPLICATION_DIR,
    "infrastructure": _INFRASTRUCTURE_DIR,
}

# Forbidden import targets per layer (within ledger_core.*)
_FORBIDDEN_IMPORTS: dict[str, list[str]] = {
    "domain": ["application", "infrastructure", "config"],
    "application": ["infrastructure"],
    "infrastructure": ["application"],
}


# ---------------------------------------------------------------------------
# Import scanner
# ---------------------------------------------------------------------------

def _extract_imports(filepath: Path) -> list[str]:
    """Parse a Python file and return all imported module strings."""
    tree = ast.parse(filepath.read_text(), filename=str(filepath))
    imports: list[str] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            imports.extend(alias.name for alias in node.names)
        elif isinstance(node, ast.ImportFrom) and node.module:
            imports.append(node.module)
    return imports


def _python_files(directory: Path) -> list[Path]:
    return sorted(directory.rglob("*.py"))


def _ledger_core_imports(imports: list[str]) -> list[str]:
    return [i for i in imports if i.startswith("ledger_core.")]


def _layer_of_import(module_path: str) -> str | None:
    """ledger_core.domain.events → 'domain'; ledger_core.config → 'config'."""
    parts = module_path.split(".")
    if len(parts) < 2:
        return None
    return parts[1]


def _find_violations(layer_name: str, directory: Path) -> list[str]:
    forbidden = _FORBIDDEN_IMPORTS.get(layer_name, [])
    violations: list[str] = []
    for py_file in _python_files(directory):
        for imp in _ledger_core_imports(_extract_imports(py_file)):
            target_layer = _layer_of_import(imp)
            if target_layer in forbidden:
                rel_path = py_file.relative_to(_SRC_ROOT)
                violations.append(
                    f"{rel_path} imports {imp} ({layer_name} → {target_layer} is forbidden)"
                )
    return violations


# ---------------------------------------------------------------------------
# Tests: Boundary enforcement per layer
# ---------------------------------------------------------------------------

class TestLayerBoundaries:

    @pytest.mark.parametrize("layer_name", list(_LAYERS))
    def test_no_forbidden_imports(self, layer_name: str) -> None:
        violations = _find_violations(layer_name, _LAYERS[layer_name])
        assert violations == [], (
            f"{layer_name} layer boundary violations:\n"
            + "\n".join(f"  - {v}" for v in violations)
        )

    @pytest.mark.parametrize("layer_name", list(_LAYERS))
    def test_layer_exists(self, layer_name: str) -> None:
        assert _LAYERS[layer_name].is_dir(), f"{layer_name}/ layer directory must exist"


# ---------------------------------------------------------------------------
# Tests: Specific forbidden patterns
# ---------------------------------------------------------------------------

class TestForbiddenPatterns:

    def test_domain_has_no_framework_imports(self) -> None:
        """Domain must not import ORMs, settings libraries or network clients."""
        framework_keywords = ["sqlalchemy", "pydantic", "requests", "httpx", "aiohttp"]
        for py_file in _python_files(_DOMAIN_DIR):
            for imp in _extract_imports(py_file):
                for kw in framework_keywords:
                    assert kw not in imp.lower(), (
                        f"domain/{py_file.name} imports framework library: {imp}"
                    )

    def test_application_does_not_touch_the_database(self) -> None:
        for py_file in _python_files(_APPLICATION_DIR):
            for imp in _extract_imports(py_file):
                assert not imp.startswith("sqlalchemy"), (
                    f"application/{py_file.relative_to(_APPLICATION_DIR)} imports {imp}"
                )

    def test_domain_has_no_io_operations(self) -> None:
        for py_file in _python_files(_DOMAIN_DIR):
            tree = ast.parse(py_file.read_text())
            for node in ast.walk(tree):
                if isinstance(node, ast.Call) and isinstance(node.func, ast.Name):
                    assert node.func.id != "open", (
                        f"domain/{py_file.name} contains open() call (I/O in domain)"
                    )

    def test_infrastructure_does_not_define_domain_classes(self) -> None:
        """Infrastructure must not define Aggregate or DomainEvent subclasses."""
        for py_file in _python_files(_INFRASTRUCTURE_DIR):
            tree = ast.parse(py_file.read_text())
            for node in ast.walk(tree):
                if not isinstance(node, ast.ClassDef):
                    continue
                for base in node.bases:
                    base_name = ""
                    if isinstance(base, ast.Name):
                        base_name = base.id
                    elif isinstance(base, ast.Attribute):
                        base_name = base.attr
                    assert base_name not in ("Aggregate", "DomainEvent", "ProjectionHandler"), (
                        f"infrastructure/{py_file.name} defines class {node.name} "
                        f"inheriting from {base_name}"
                    )
