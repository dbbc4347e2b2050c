# gateci_workflow.py
# gateci's own CI: lint, tests across Python versions, then publish on release.
from __future__ import annotations

import gateci
from gateci import EventKind, TriggerRule, action, event, job, matrix, sh


def pipeline():
    return gateci.pipeline(
        "gateci",
        job(
            "format-check",
            sh("Ruff format check", "ruff format --check ."),
        ),
        job(
            "lint",
            sh("Ruff check", "ruff check src tests"),
        ),
        job(
            "test",
            sh("Install package", "pip install -e '.[test]'"),
            sh("Run pytest", "python${{ matrix.python }} -m pytest -q"),
            needs=["format-check", "lint"],
            matrix=matrix(
                python=["3.10", "3.11", "3.12"],
                include=[{"python": "3.13", "experimental": "true"}],
            ),
            continue_on_error="experimental",
            timeout=30 * 60,
        ),
        gateci.gate("ci-gate", needs=["test"]),
        job(
            "publish",
            sh("Build", "python -m build"),
            sh("Upload", "twine upload dist/*"),
            needs=["ci-gate"],
            when=event("release") & action("published"),
        ),
        on=[
            TriggerRule(EventKind.PUSH, branches=("master",)),
            TriggerRule(EventKind.PULL_REQUEST, actions=("opened", "synchronize", "reopened")),
            TriggerRule(EventKind.RELEASE, actions=("published",)),
            TriggerRule(EventKind.MANUAL),
        ],
        concurrency_group="${{ workflow }}-${{ pr_number || ref }}",
    )
