from __future__ import annotations
import os

ARTIFACT_DIR = os.environ.get("STAGECI_ARTIFACT_DIR", ".stageci/artifacts")
ARTIFACT_RETENTION_DAYS = int(os.environ.get("STAGECI_ARTIFACT_RETENTION_DAYS", "7"))

REGISTRY = os.environ.get("STAGECI_REGISTRY", "docker.io")
REGISTRY_ORG = os.environ.get("STAGECI_REGISTRY_ORG", "paritytech")
PROTECTED_BRANCH = os.environ.get("STAGECI_PROTECTED_BRANCH", "master")

# names of the env vars holding the registry credential pair (values are never read here)
REGISTRY_USER_VAR = os.environ.get("STAGECI_REGISTRY_USER_VAR", "Docker_Hub_User_Parity")
REGISTRY_PASS_VAR = os.environ.get("STAGECI_REGISTRY_PASS_VAR", "Docker_Hub_Pass_Parity")

DEFAULT_RETRY_MAX = int(os.environ.get("STAGECI_RETRY_MAX", "2"))

BUILD_TOOL = os.environ.get("STAGECI_BUILD_TOOL", "buildah")
DOCKERFILE = os.environ.get("STAGECI_DOCKERFILE", "ci.Dockerfile")
# entrypoint of the registry description-update tool
DESCRIPTION_COMMAND = os.environ.get("STAGECI_DESCRIPTION_COMMAND", "cd / && sh entrypoint.sh")

# per-job working copies; relative paths are taken from the checkout
JOBS_DIR = os.environ.get("STAGECI_JOBS_DIR", ".stageci/jobs")
# top-level checkout entries never copied into a job workspace (artifacts arrive from the store)
WORKSPACE_EXCLUDE = tuple(
    n for n in os.environ.get("STAGECI_WORKSPACE_EXCLUDE", ".stageci,artifacts,target").split(",") if n
)
