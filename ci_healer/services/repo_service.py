"""
Repo Service
============
Prepares the local workspace a heal run operates on.

    - Clone once into <WORKSPACE_ROOT>/<repo-name>/ and reuse it afterwards.
    - Detect the project type, which orders the classifier's extractors.
"""
import os
import subprocess
import logging

logger = logging.getLogger(__name__)

WORKSPACE_ROOT = os.path.abspath(os.getenv("WORKSPACE_ROOT", "workspace"))


def get_repo_name(repo_url: str) -> str:
    """Extract repository name from URL."""
    # Handle git@github.com:org/repo.git or https://github.com/org/repo
    name = repo_url.rstrip("/").split("/")[-1].split(":")[-1]
    if name.endswith(".git"):
        name = name[:-4]
    return name


def clone_repository(repo_url: str, github_token: str = "", workspace_root: str = WORKSPACE_ROOT) -> str:
    """
    Clone a repository into the workspace root, reusing an existing clone.

    Returns
    -------
    str
        Absolute path to the cloned repository.

    Raises
    ------
    RuntimeError
        When git clone fails.
    """
    os.makedirs(workspace_root, exist_ok=True)

    repo_name = get_repo_name(repo_url)
    dest_path = os.path.abspath(os.path.join(workspace_root, repo_name))

    if os.path.exists(dest_path):
        logger.info("Workspace already exists for %s at %s", repo_name, dest_path)
        return dest_path

    logger.info("Cloning %s into %s", repo_url, dest_path)

    auth_url = repo_url
    if github_token and repo_url.startswith("https://github.com/"):
        auth_url = repo_url.replace("https://", f"https://x-access-token:{github_token}@", 1)

    try:
        subprocess.run(
            ["git", "clone", auth_url, dest_path],
            check=True,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as e:
        stderr = (e.stderr or "").replace(github_token, "***") if github_token else (e.stderr or "")
        logger.error("Failed to clone repository: %s", stderr)
        raise RuntimeError(f"Cloning failed: {stderr.strip()}") from None

    logger.info("Successfully cloned repository to %s", dest_path)
    return dest_path


def detect_project_type(workspace_path: str) -> str:
    """
    "node" when a package.json exists, "python" for the usual Python
    markers, "generic" otherwise.
    """
    if os.path.exists(os.path.join(workspace_path, "package.json")):
        return "node"

    python_markers = ["requirements.txt", "pyproject.toml", "setup.py", "setup.cfg", "tox.ini", "Pipfile"]
    for marker in python_markers:
        if os.path.exists(os.path.join(workspace_path, marker)):
            return "python"

    return "generic"
