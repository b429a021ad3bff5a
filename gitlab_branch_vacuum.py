#!/usr/bin/env python3
import argparse
import enum
import getpass
import json
import logging
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import quote

import requests

__version__ = "1.0.0"

DEFAULT_API_URL = "https://gitlab.com/api/v4"
DEFAULT_MAIN_BRANCH = "main"
DEFAULT_STALE_DAYS = 90
PER_PAGE = 100
REQUEST_TIMEOUT = 15
SECONDS_PER_DAY = 60 * 60 * 24

EXIT_CONFIG_ERROR = 1
EXIT_RUNTIME_ERROR = 2

logger = logging.getLogger(__name__)


# --- errors ---

@dataclass(frozen=True)
class ApiErrorInfo:
    kind: str
    message: str
    action: str


class VacuumError(Exception):
    pass


class ConfigError(VacuumError):
    pass


class FetchError(VacuumError):
    def __init__(self, info: ApiErrorInfo):
        super().__init__("Failed to fetch branches from GitLab.")
        self.info = info


class DeleteError(VacuumError):
    def __init__(self, branch: str, info: ApiErrorInfo):
        super().__init__(f"Failed to delete '{branch}': {info.message}")
        self.branch = branch
        self.info = info


class InvalidResponseError(requests.RequestException):
    pass


def classify_error(exc: requests.RequestException) -> ApiErrorInfo:
    """Turn a failed GitLab call into something a human can act on."""
    if isinstance(exc, InvalidResponseError):
        return ApiErrorInfo(
            "unknown",
            "GitLab returned a response that is not valid JSON.",
            "Check that --api-url points at the GitLab API (e.g. https://gitlab.com/api/v4).",
        )

    response = getattr(exc, "response", None)
    if response is None:
        return ApiErrorInfo(
            "network",
            "Network error while communicating with GitLab.",
            "Check internet connectivity or GitLab availability.",
        )

    status = response.status_code
    if status == 401:
        return ApiErrorInfo(
            "auth",
            "Unauthorized: Invalid GitLab API token.",
            "Verify that the token is correct and not expired.",
        )
    if status == 403:
        return ApiErrorInfo(
            "permission",
            "Forbidden: Insufficient permissions.",
            "Ensure the token has 'api' scope and project access.",
        )
    if status == 404:
        return ApiErrorInfo("not_found", "Project not found.", "Verify the GitLab Project ID.")
    if status == 429:
        return ApiErrorInfo(
            "rate_limit",
            "Rate limit exceeded by GitLab API.",
            "Retry later or reduce request frequency.",
        )
    return ApiErrorInfo(
        "unknown",
        f"GitLab API error ({status}).",
        _response_message(response) or "Inspect GitLab API response.",
    )


def _response_message(response: Any) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return None


# --- model ---

def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Branch:
    name: str
    protected: bool = False
    last_commit_at: Optional[datetime] = None

    @classmethod
    def from_api(cls, payload: dict) -> "Branch":
        commit = payload.get("commit") or {}
        return cls(
            name=payload["name"],
            protected=bool(payload.get("protected", False)),
            last_commit_at=parse_timestamp(commit.get("committed_date")),
        )


@dataclass(frozen=True)
class RunConfig:
    project_id: str
    token: str
    api_url: str = DEFAULT_API_URL
    main_branch: str = DEFAULT_MAIN_BRANCH
    stale_days: int = DEFAULT_STALE_DAYS
    dry_run: bool = True
    exclusions: frozenset[str] = frozenset()
    json_output: bool = False


class Outcome(enum.Enum):
    DELETED = "deleted"
    PREVIEWED = "previewed"
    FAILED = "failed"


@dataclass
class RunResult:
    project_id: str
    dry_run: bool
    excluded_branches: list[str] = field(default_factory=list)
    scanned: int = 0
    eligible: int = 0
    deleted: int = 0
    previewed: int = 0
    failed: int = 0
    failed_branches: list[str] = field(default_factory=list)
    error: Optional[str] = None
    success: bool = True

    def record(self, name: str, outcome: Outcome) -> None:
        if outcome is Outcome.DELETED:
            self.deleted += 1
        elif outcome is Outcome.PREVIEWED:
            self.previewed += 1
        else:
            self.failed += 1
            self.failed_branches.append(name)
            self.success = False

    def fail(self, message: str) -> None:
        self.error = message
        self.success = False

    def fail_fetch(self, info: ApiErrorInfo) -> None:
        self.fail(info.message)

    def finalize(self) -> "RunResult":
        self.success = self.error is None and self.failed == 0
        return self

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "projectId": self.project_id,
            "dryRun": self.dry_run,
            "branchesScanned": self.scanned,
            "branchesEligible": self.eligible,
            "branchesDeleted": self.deleted,
            "branchesPreviewed": self.previewed,
            "branchesFailed": self.failed,
            "failedBranches": list(self.failed_branches),
            "excludedBranches": list(self.excluded_branches),
            "success": self.success,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


# --- GitLab API ---

class GitLabClient:
    def __init__(
        self,
        project_id: str,
        token: str,
        api_url: str = DEFAULT_API_URL,
        session: Optional[requests.Session] = None,
        timeout: float = REQUEST_TIMEOUT,
    ):
        self.base_url = f"{api_url.rstrip('/')}/projects/{quote(str(project_id), safe='')}"
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"PRIVATE-TOKEN": token})

    def __enter__(self) -> "GitLabClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self.session.close()

    def get(self, path: str, params: Optional[dict] = None) -> Any:
        logger.debug("GET %s%s params=%s", self.base_url, path, params)
        response = self.session.get(f"{self.base_url}{path}", params=params, timeout=self.timeout)
        response.raise_for_status()
        try:
            return response.json()
        except ValueError as e:
            raise InvalidResponseError("GitLab returned a non-JSON response.", response=response) from e

    def delete(self, path: str) -> None:
        logger.debug("DELETE %s%s", self.base_url, path)
        response = self.session.delete(f"{self.base_url}{path}", timeout=self.timeout)
        response.raise_for_status()


def list_branches(client: GitLabClient, per_page: int = PER_PAGE) -> list[Branch]:
    branches: list[Branch] = []
    page = 1
    try:
        while True:
            data = client.get("/repository/branches", params={"per_page": per_page, "page": page})
            logger.debug("page %d returned %d branches", page, len(data))
            branches.extend(Branch.from_api(item) for item in data)
            if len(data) < per_page:
                break
            page += 1
    except requests.RequestException as e:
        raise FetchError(classify_error(e)) from e
    return branches


# --- filtering ---

def branch_age_days(branch: Branch, now: datetime) -> Optional[float]:
    if branch.last_commit_at is None:
        return None
    return (now - branch.last_commit_at).total_seconds() / SECONDS_PER_DAY


def _fmt_age(age: Optional[float]) -> str:
    return "unknown" if age is None else f"{age:.2f}"


def is_stale(branch: Branch, stale_days: int, now: datetime) -> bool:
    age = branch_age_days(branch, now)
    return age is not None and age > stale_days


def select_eligible(branches: list[Branch], config: RunConfig, now: Optional[datetime] = None) -> list[Branch]:
    """Branches that may be deleted, in the order GitLab returned them.

    Main, protected, fresh and excluded branches are all left alone.
    """
    now = now or datetime.now(timezone.utc)
    eligible = []
    for branch in branches:
        age = branch_age_days(branch, now)
        if branch.name == config.main_branch:
            logger.debug("skipping main branch %s (age %s days)", branch.name, _fmt_age(age))
            continue
        if branch.protected:
            logger.debug("skipping protected branch %s (age %s days)", branch.name, _fmt_age(age))
            continue
        if not is_stale(branch, config.stale_days, now):
            logger.debug(
                "skipping fresh branch %s (age %s days, threshold %d)",
                branch.name,
                _fmt_age(age),
                config.stale_days,
            )
            continue
        if branch.name in config.exclusions:
            logger.debug("skipping excluded branch %s", branch.name)
            continue
        eligible.append(branch)
    return eligible


# --- deletion ---

def _echo(config: RunConfig, message: str, err: bool = False) -> None:
    if not config.json_output:
        print(message, file=sys.stderr if err else sys.stdout)


def delete_branch(client: GitLabClient, name: str) -> None:
    try:
        client.delete(f"/repository/branches/{quote(name, safe='')}")
    except requests.RequestException as e:
        raise DeleteError(name, classify_error(e)) from e


def process_branch(client: GitLabClient, name: str, config: RunConfig) -> Outcome:
    if config.dry_run:
        _echo(config, f"🟡 [Dry Run] Would delete: {name}")
        return Outcome.PREVIEWED

    try:
        delete_branch(client, name)
    except DeleteError as e:
        _echo(config, f"❌ {e}", err=True)
        return Outcome.FAILED

    _echo(config, f"✅ Deleted branch: {name}")
    return Outcome.DELETED


def new_result(config: RunConfig) -> RunResult:
    return RunResult(
        project_id=config.project_id,
        dry_run=config.dry_run,
        excluded_branches=sorted(config.exclusions),
    )


def run_cleanup(
    client: GitLabClient,
    config: RunConfig,
    result: Optional[RunResult] = None,
    now: Optional[datetime] = None,
) -> RunResult:
    """Fetch, filter and delete, one branch at a time.

    A FetchError is recorded on ``result`` and then re-raised, so callers can
    still report the (empty) result. Deletion failures never abort the loop.
    """
    if result is None:
        result = new_result(config)

    _echo(config, "🔍 Fetching branches from GitLab...")
    try:
        branches = list_branches(client)
    except FetchError as e:
        result.fail_fetch(e.info)
        raise

    result.scanned = len(branches)
    eligible = select_eligible(branches, config, now=now)
    result.eligible = len(eligible)
    _echo(config, f"🧹 Found {len(eligible)} stale branches.\n")

    for branch in eligible:
        result.record(branch.name, process_branch(client, branch.name, config))

    return result.finalize()


# --- CLI ---

def parse_exclusions(value: Optional[str]) -> frozenset[str]:
    if not value:
        return frozenset()
    return frozenset(name.strip() for name in value.split(",") if name.strip())


def parse_stale_days(value: Any) -> int:
    try:
        parsed = int(str(value).strip())
    except ValueError:
        parsed = 0
    if parsed <= 0:
        raise ConfigError("--stale-days must be a positive integer")
    return parsed


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str):
        self.print_usage(sys.stderr)
        self.exit(EXIT_CONFIG_ERROR, f"{self.prog}: error: {message}\n")


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = _ArgumentParser(
        prog="gitlab-branch-vacuum",
        description=(
            "Safely delete stale GitLab branches with dry-run support. "
            "Designed for CI automation and repository hygiene."
        ),
        epilog=(
            "examples:\n"
            "  gitlab-branch-vacuum --project-id 12345 --token $GITLAB_TOKEN\n"
            "  gitlab-branch-vacuum --project-id 12345 --token $GITLAB_TOKEN --stale-days 90 --no-dry-run"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--project-id", default=os.environ.get("GITLAB_PROJECT_ID"), help="GitLab project ID or path")
    parser.add_argument(
        "--token",
        default=os.environ.get("GITLAB_TOKEN"),
        help="GitLab personal access token (scope: api)",
    )
    parser.add_argument(
        "--api-url",
        default=os.environ.get("GITLAB_API_URL", DEFAULT_API_URL),
        help=f"GitLab API base URL (default: {DEFAULT_API_URL})",
    )
    parser.add_argument(
        "--stale-days",
        default=str(DEFAULT_STALE_DAYS),
        help=f"Delete branches inactive for N days (default: {DEFAULT_STALE_DAYS})",
    )
    parser.add_argument(
        "--exclude",
        default="",
        help="Comma-separated branch names to exclude (e.g. develop,release)",
    )
    parser.add_argument(
        "--main-branch",
        default=DEFAULT_MAIN_BRANCH,
        help=f"Main branch name (default: {DEFAULT_MAIN_BRANCH})",
    )
    parser.add_argument(
        "--dry-run",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Preview deletions without deleting (default: dry run)",
    )
    parser.add_argument("--json", action="store_true", help="Emit the run result as JSON.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def prompt_for_missing(args: argparse.Namespace) -> None:
    if args.json:
        return
    try:
        if not args.token:
            args.token = getpass.getpass("GitLab Personal Access Token: ").strip() or None
        if not args.project_id:
            args.project_id = input("GitLab Project ID: ").strip() or None
    except EOFError:
        pass


def build_config(args: argparse.Namespace) -> RunConfig:
    if not args.token or not args.project_id:
        raise ConfigError("--project-id and --token are required (flag, environment or interactive).")
    stale_days = parse_stale_days(args.stale_days)
    if not args.main_branch or not args.main_branch.strip():
        raise ConfigError("--main-branch must not be empty")

    return RunConfig(
        project_id=str(args.project_id),
        token=args.token,
        api_url=args.api_url,
        main_branch=args.main_branch.strip(),
        stale_days=stale_days,
        dry_run=args.dry_run,
        exclusions=parse_exclusions(args.exclude),
        json_output=args.json,
    )


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def print_summary(result: RunResult) -> None:
    print("\n📊 Summary")
    print(f"✔ Branches scanned: {result.scanned}")
    print(f"✔ Branches eligible: {result.eligible}")
    if result.dry_run:
        print(f"✔ Branches previewed: {result.previewed}")
    else:
        print(f"✔ Branches deleted: {result.deleted}")
    if result.failed:
        print(f"✖ Failed deletions: {result.failed}")
    excluded = ", ".join(result.excluded_branches) if result.excluded_branches else "None"
    print(f"🚯 Excluded branches: {excluded}")


def execute(config: RunConfig, session: Optional[requests.Session] = None) -> int:
    result = new_result(config)
    with GitLabClient(config.project_id, config.token, api_url=config.api_url, session=session) as client:
        try:
            run_cleanup(client, config, result)
        except FetchError as e:
            if config.json_output:
                print(json.dumps(result.to_dict(), indent=2))
            else:
                print(f"❌ {e.info.message}", file=sys.stderr)
                print(f"👉 {e.info.action}", file=sys.stderr)
                print("🚨 Cleanup aborted.", file=sys.stderr)
                print(str(e), file=sys.stderr)
            return EXIT_RUNTIME_ERROR
        except Exception as e:
            logger.debug("unhandled error", exc_info=True)
            result.fail(str(e))
            if config.json_output:
                print(json.dumps(result.to_dict(), indent=2))
            else:
                print("🚨 Cleanup aborted.", file=sys.stderr)
                print(f"ERROR: {e}", file=sys.stderr)
            return EXIT_RUNTIME_ERROR

    if config.json_output:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print_summary(result)
    return 0 if result.success else EXIT_RUNTIME_ERROR


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(args.verbose)
    prompt_for_missing(args)

    try:
        config = build_config(args)
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(EXIT_CONFIG_ERROR)

    try:
        code = execute(config)
    except Exception as e:
        logger.debug("unhandled error", exc_info=True)
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(EXIT_RUNTIME_ERROR)

    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
