from __future__ import annotations

import ast
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
VERSIONS_DIR = ROOT / "archive_restore" / "db" / "migrations" / "versions"


def _module_constants(tree: ast.Module) -> dict[str, object]:
    values: dict[str, object] = {}
    for node in tree.body:
        targets: list[ast.expr] = []
        if isinstance(node, ast.Assign):
            targets = node.targets
        elif isinstance(node, ast.AnnAssign) and node.value is not None:
            targets = [node.target]
        for target in targets:
            if isinstance(target, ast.Name) and isinstance(node.value, ast.Constant):
                values[target.id] = node.value.value
    return values


def check_versions(versions_dir: Path) -> list[str]:
    files = sorted(versions_dir.glob("*.py"))
    if not files:
        return ["no migration files found"]

    violations: list[str] = []
    parents: dict[str, str | None] = {}
    for migration in files:
        tree = ast.parse(migration.read_text(encoding="utf-8"))
        functions = {node.name for node in tree.body if isinstance(node, ast.FunctionDef)}
        for required in ("upgrade", "downgrade"):
            if required not in functions:
                violations.append(f"{migration.name}: missing {required}()")
        constants = _module_constants(tree)
        revision = constants.get("revision")
        if not isinstance(revision, str):
            violations.append(f"{migration.name}: missing revision id")
            continue
        if revision in parents:
            violations.append(f"{migration.name}: duplicate revision {revision}")
        parents[revision] = constants.get("down_revision")  # type: ignore[assignment]

    for revision, parent in parents.items():
        if parent is not None and parent not in parents:
            violations.append(f"{revision}: unknown down_revision {parent}")
    heads = set(parents) - {parent for parent in parents.values() if parent}
    if len(heads) > 1:
        violations.append(f"multiple heads: {', '.join(sorted(heads))}")
    return violations


def main() -> int:
    violations = check_versions(VERSIONS_DIR)
    if violations:
        print("Migration rule violations:")
        for row in violations:
            print(f"- {row}")
        return 1
    print(f"Migration rules OK ({len(list(VERSIONS_DIR.glob('*.py')))} files checked)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
