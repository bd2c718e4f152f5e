"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    GITHUB_TOKEN               — Required for triggering/polling GitHub Actions and pushing fixes
    RUN_RETRY_LIMIT            — Max CI triggers per run (default: 5)
    PROBE_TIMEOUT_SECONDS      — Max seconds a single CI probe may wait (default: 300)
    RUN_DEADLINE_SECONDS       — Overall run deadline, 0 disables it (default: 0)
    PROBE_MAX_ATTEMPTS         — Attempts against an unreachable CI before giving up (default: 3)
    PROBE_BACKOFF_SECONDS      — Initial backoff between polls / retries (default: 5)
    PROBE_BACKOFF_CAP_SECONDS  — Backoff ceiling (default: 30)
    CI_WORKFLOW_FILE           — Workflow file to dispatch (empty: rely on push-triggered runs)
    CI_COMMAND                 — Command run by the sandbox probe
    DOCKER_IMAGE               — Sandbox container image
    MAX_COMMITS_PER_RUN        — Commit safety cap (default: 20)
    MAX_DIFF_LINES             — Largest accepted patch, in changed lines (default: 50)
    VCS_MAX_ATTEMPTS           — Attempts for a conflicting git write (default: 3)
    TEAM_NAME / LEADER_NAME    — Run identity, also used for the branch name
    RESULTS_PATH               — Where the final results.json is written

Retry Limit:
    RUN_RETRY_LIMIT bounds CI triggers, not fix attempts. Several fixes in one
    iteration cost a single retry unit. After exhaustion the agent stops and
    writes the final results.json.
"""
import os
from dotenv import load_dotenv

load_dotenv()

GITHUB_TOKEN = os.getenv("GITHUB_TOKEN", "")
RUN_RETRY_LIMIT = int(os.getenv("RUN_RETRY_LIMIT", 5))

# CI probe timing
PROBE_TIMEOUT_SECONDS = float(os.getenv("PROBE_TIMEOUT_SECONDS", 300))
RUN_DEADLINE_SECONDS = float(os.getenv("RUN_DEADLINE_SECONDS", 0))
PROBE_MAX_ATTEMPTS = int(os.getenv("PROBE_MAX_ATTEMPTS", 3))
PROBE_BACKOFF_SECONDS = float(os.getenv("PROBE_BACKOFF_SECONDS", 5.0))
PROBE_BACKOFF_CAP_SECONDS = float(os.getenv("PROBE_BACKOFF_CAP_SECONDS", 30.0))

# CI backends
CI_WORKFLOW_FILE = os.getenv("CI_WORKFLOW_FILE", "")
CI_COMMAND = os.getenv("CI_COMMAND", "python -m pytest -q")
DOCKER_IMAGE = os.getenv("DOCKER_IMAGE", "python:3.11-slim")

# Commit safety
MAX_COMMITS_PER_RUN = int(os.getenv("MAX_COMMITS_PER_RUN", 20))
MAX_DIFF_LINES = int(os.getenv("MAX_DIFF_LINES", 50))
VCS_MAX_ATTEMPTS = int(os.getenv("VCS_MAX_ATTEMPTS", 3))

# Naming conventions
TEAM_NAME = os.getenv("TEAM_NAME", "ANONYMOUS")
LEADER_NAME = os.getenv("LEADER_NAME", "AGENT")

RESULTS_PATH = os.getenv("RESULTS_PATH", "results.json")
