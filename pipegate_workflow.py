# pipegate_workflow.py
# Workflow for pipegate itself: lint and test on every push, release and publish from main.
from __future__ import annotations

from pipegate.dsl import (
    cache,
    is_true,
    job,
    lint_step,
    needs_output,
    pipeline,
    policy,
    publish_step,
    release_step,
    sh,
    step_output,
    test_step,
    workflow,
)

POLICY = policy("pipegate-dev/pipegate", release_credentials=["PYPI_TOKEN"])

# Tags v<version> from pyproject.toml unless that tag already exists.
RELEASE_CMD = r"""
version=$(sed -n 's/^version = "\(.*\)"/\1/p' pyproject.toml | head -n1)
tag="v$version"
if git rev-parse -q --verify "refs/tags/$tag" >/dev/null; then
  echo "release_created=false" >> "$PIPEGATE_OUTPUT"
else
  git tag "$tag"
  echo "release_created=true" >> "$PIPEGATE_OUTPUT"
  echo "tag_name=$tag" >> "$PIPEGATE_OUTPUT"
  echo "version=$version" >> "$PIPEGATE_OUTPUT"
fi
"""


def pipelines():
    return workflow(
        pipeline(
            "ci",
            # Lint job - runs ruff on the codebase
            job(
                "lint",
                lint_step("Ruff check", tool="ruff", args="check", files=["src/", "tests/"]),
                lint_step("Ruff format check", tool="ruff", args="format --check", files=["src/", "tests/"]),
                cache=cache(".ruff_cache", key_files=["pyproject.toml"], prefix="v1"),
            ),
            # Test job - runs pytest on the codebase
            job(
                "test",
                test_step("Run pytest", "pytest", "-q", install=True),
                needs=["lint"],
                cache=cache(".pytest_cache", key_files=["pyproject.toml", "tests/**"], prefix="v1"),
            ),
            env={"PYTHONDONTWRITEBYTECODE": "1"},
        ),
        pipeline(
            "release",
            job(
                "release",
                release_step("Tag release", RELEASE_CMD),
                outputs={
                    "release_created": step_output("release", "release_created"),
                    "tag_name": step_output("release", "tag_name"),
                },
            ),
            job(
                "publish",
                sh("Build", "python -m pip install build twine && python -m build"),
                publish_step(
                    "Publish to PyPI",
                    "twine upload dist/*",
                    credential="PYPI_TOKEN",
                    token_env="TWINE_PASSWORD",
                    env={"TWINE_USERNAME": "__token__"},
                ),
                needs=["release"],
                condition=is_true(needs_output("release", "release_created")),
                permissions=["PYPI_TOKEN"],
            ),
            trigger="push-main",
            requires=["ci"],
        ),
    )
