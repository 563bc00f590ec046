#!/usr/bin/env python3
"""Backup -> restore -> verify pipeline for moving a MongoDB database to Atlas.

The pipeline shells out to the MongoDB Database Tools and mongosh; it never
talks the wire protocol itself except for the optional index step.  Each
stage blocks until its tool exits and the next stage only starts after the
previous one succeeded.

MIGRATION PIPELINE (ASCII Diagram)
==================================

::

    +----------------------------------------------------------+
    |                  run_job(job) / driver                    |
    |  Pending -> one stage at a time -> Completed | Failed    |
    +------------------------------+---------------------------+
                                   |
                                   v
    +----------------------------------------------------------+
    | Stage 1  step_check_prerequisites                        |
    |   mongodump, mongorestore, mongosh on PATH and runnable  |
    +------------------------------+---------------------------+
                                   v
    +----------------------------------------------------------+
    | Stage 2  step_probe_connectivity                         |
    |   mongosh ping against source (host:port) + destination  |
    +------------------------------+---------------------------+
                                   v
    +----------------------------------------------------------+
    | Stage 3  step_export                                     |
    |   mongodump --gzip -> <staging>/<database>/*.bson.gz     |
    +------------------------------+---------------------------+
                                   v
    +----------------------------------------------------------+
    | Stage 4  step_import                                     |
    |   mongorestore --drop (mirror semantics)                 |
    |   [optional] step_create_indexes via pymongo             |
    +------------------------------+---------------------------+
                                   v
    +----------------------------------------------------------+
    | Stage 5  step_verify                                     |
    |   one mongosh countDocuments per manifest collection     |
    |   failures recorded as VerificationWarning, not fatal    |
    +----------------------------------------------------------+

Staging layout
==============

::

    <staging>/
    +-- <database>/
        +-- templates.bson.gz
        +-- templates.metadata.json.gz
        +-- ...

The staging directory belongs to one job at a time.  A failed Export leaves
it in place for inspection; an interrupted Export/Import leaves it in an
undefined state and it should be deleted before the next run.
"""

import json
import re
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_SOURCE = "localhost:27017"
DEFAULT_DATABASE = "requirements-gathering-agent"
DEFAULT_BACKUP_DIR = Path("mongodb-backup")

# Collections reported on during verification.  Export/Import always move
# the whole database regardless of this list.
COLLECTION_MANIFEST: tuple[str, ...] = (
    "templates",
    "projects",
    "projectdocuments",
    "users",
    "audittrails",
    "feedback",
    "contexttracking",
    "generationjobs",
    "qualityassessments",
    "compliancereports",
)

REQUIRED_TOOLS: tuple[str, ...] = ("mongodump", "mongorestore", "mongosh")

PING_EVAL = "db.adminCommand({ping: 1}).ok"
MAX_PING_BACKOFF_S = 30

# Secondary indexes created by --create-indexes, keyed by collection.
INDEX_DEFINITIONS: dict[str, list[list[tuple[str, int]]]] = {
    "templates": [
        [("name", 1)],
        [("category", 1)],
        [("is_active", 1), ("is_deleted", 1)],
        [("created_at", -1)],
    ],
    "projects": [
        [("name", 1)],
        [("framework", 1)],
        [("created_at", -1)],
    ],
    "projectdocuments": [
        [("projectId", 1)],
        [("type", 1)],
        [("status", 1)],
        [("generatedAt", -1)],
    ],
    "users": [
        [("email", 1)],
        [("role", 1)],
    ],
    "audittrails": [
        [("entityType", 1), ("entityId", 1)],
        [("timestamp", -1)],
        [("userId", 1)],
    ],
    "feedback": [
        [("projectId", 1)],
        [("documentId", 1)],
        [("createdAt", -1)],
    ],
    "contexttracking": [
        [("projectId", 1)],
        [("documentId", 1)],
        [("createdAt", -1)],
    ],
    "generationjobs": [
        [("projectId", 1)],
        [("status", 1)],
        [("createdAt", -1)],
    ],
    "qualityassessments": [
        [("documentId", 1)],
        [("assessedAt", -1)],
    ],
    "compliancereports": [
        [("documentId", 1)],
        [("generatedAt", -1)],
    ],
}

# Server error codes meaning "an equivalent index is already there".
_INDEX_EXISTS_CODES = (85, 86)


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

class JobStatus(Enum):
    PENDING = "Pending"
    CHECKING_PREREQUISITES = "CheckingPrerequisites"
    PROBING_CONNECTIVITY = "ProbingConnectivity"
    EXPORTING = "Exporting"
    IMPORTING = "Importing"
    VERIFYING = "Verifying"
    COMPLETED = "Completed"
    FAILED = "Failed"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class MigrationError(Exception):
    """A fatal stage failure.  Halts the pipeline and fails the job.

    Attributes:
        stage: Human-readable name of the stage that raised.
        output: Raw (already redacted) output of the failing tool, if any.
    """

    stage = "Migration"

    def __init__(self, message: str, output: str = ""):
        super().__init__(message)
        self.output = output


class ToolMissingError(MigrationError):
    stage = "Prerequisite check"

    def __init__(self, tools: list[str], output: str = ""):
        self.tools = list(tools)
        super().__init__(
            f"Required tool(s) not available: {', '.join(self.tools)}. "
            "Install the MongoDB Database Tools and mongosh.",
            output,
        )


class ConnectivityError(MigrationError):
    stage = "Connectivity probe"


class ExportError(MigrationError):
    stage = "Export"


class ImportFailedError(MigrationError):
    stage = "Import"


class VerificationWarning(UserWarning):
    """A count query that failed for one collection.  Never fails the job."""

    def __init__(self, collection: str, detail: str = ""):
        self.collection = collection
        self.detail = detail
        super().__init__(f"Could not verify collection {collection}: {detail}")


@dataclass(frozen=True)
class CollectionCount:
    name: str
    document_count: int


@dataclass
class MigrationJob:
    """One end-to-end migration run and the state it has reached.

    ``destination_endpoint`` holds credentials and is kept out of ``repr``.
    """

    source_endpoint: str
    destination_endpoint: str = field(repr=False)
    database_name: str = DEFAULT_DATABASE
    staging_path: Path = DEFAULT_BACKUP_DIR
    collection_manifest: tuple[str, ...] = COLLECTION_MANIFEST
    create_indexes: bool = False
    ping_attempts: int = 1
    status: JobStatus = JobStatus.PENDING
    failure_reason: str = ""
    failed_stage: str = ""
    history: list[JobStatus] = field(default_factory=lambda: [JobStatus.PENDING])
    counts: list[CollectionCount] = field(default_factory=list)
    warnings: list[VerificationWarning] = field(default_factory=list)

    def __post_init__(self):
        self.staging_path = Path(self.staging_path)
        self.collection_manifest = tuple(self.collection_manifest)
        if self.ping_attempts < 1:
            raise ValueError("ping_attempts must be at least 1")

    @property
    def dump_dir(self) -> Path:
        """Directory mongodump writes this database's collections into."""
        return self.staging_path / self.database_name

    def advance(self, status: JobStatus) -> None:
        if self.status in TERMINAL_STATUSES:
            raise RuntimeError(
                f"Job is {self.status.value}; restart it from Pending first"
            )
        self.status = status
        self.history.append(status)

    def fail(self, reason: str, stage: str = "") -> None:
        self.advance(JobStatus.FAILED)
        self.failure_reason = reason
        self.failed_stage = stage

    def reset(self) -> None:
        """Return a terminal job to Pending so it can be run again."""
        self.status = JobStatus.PENDING
        self.failure_reason = ""
        self.failed_stage = ""
        self.history = [JobStatus.PENDING]
        self.counts = []
        self.warnings = []


@dataclass(frozen=True)
class Stage:
    """A named pipeline step.  ``run`` raises MigrationError to fail the job."""

    name: str
    status: JobStatus
    run: Callable[[MigrationJob], None]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _banner(msg: str) -> None:
    """Print a visually distinct section banner to stdout."""
    line = "=" * 60
    print(f"\n{line}\n  {msg}\n{line}")


def _redact_uri(text: str) -> str:
    """Replace credentials in MongoDB URIs with '***' for safe logging.

    Args:
        text: String that may contain mongodb:// or mongodb+srv:// URIs.

    Returns:
        Text with credentials replaced by ``***:***``.
    """
    return re.sub(
        r"mongodb(\+srv)?://[^:/@\s]+:[^@\s]+@",
        r"mongodb\1://***:***@",
        text,
    )


def _run(cmd: list[str]) -> tuple[int, str, str]:
    """Execute a subprocess command and capture its output.

    Prints the command (with redacted URIs) and blocks until it exits.  A
    binary that cannot be started is reported as exit code 127.

    Args:
        cmd: Command and arguments as a list of strings.

    Returns:
        (exit code, stdout, stderr).  Answers are read from stdout only;
        mongosh prints warnings to stderr even when it succeeds.
    """
    print(f"  -> {_redact_uri(' '.join(cmd))}")
    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except (FileNotFoundError, PermissionError) as exc:
        return 127, "", str(exc)
    if result.returncode != 0:
        print(f"  [warn] process exited with code {result.returncode}")
    return result.returncode, result.stdout, result.stderr


def _combined(stdout: str, stderr: str) -> str:
    """stdout followed by stderr, for diagnostics."""
    if stdout and stderr:
        return f"{stdout.rstrip()}\n{stderr}"
    return stdout or stderr


def _echo(output: str, limit: int = 20) -> None:
    """Print the tail of a tool's output, indented and redacted."""
    lines = [ln for ln in _redact_uri(output).splitlines() if ln.strip()]
    if len(lines) > limit:
        print(f"     ... ({len(lines) - limit} earlier line(s) omitted)")
        lines = lines[-limit:]
    for ln in lines:
        print(f"     {ln}")


def _last_line(output: str) -> str:
    lines = [ln.strip() for ln in output.splitlines() if ln.strip()]
    return lines[-1] if lines else ""


def tool_available(tool: str) -> tuple[bool, str]:
    """Return (available, output) for one external tool.

    Available means found on PATH *and* ``<tool> --version`` exits 0.
    """
    if shutil.which(tool) is None:
        return False, f"{tool}: not found on PATH"
    code, out, err = _run([tool, "--version"])
    return code == 0, _combined(out, err)


def ping(target_args: list[str]) -> tuple[bool, str]:
    """Run the admin ping against one endpoint through mongosh."""
    code, out, err = _run(["mongosh", *target_args, "--quiet", "--eval", PING_EVAL])
    return code == 0 and _last_line(out) == "1", _combined(out, err)


def _count_eval(database: str, collection: str) -> str:
    """mongosh script that prints a count, or throws if the collection is absent."""
    db_lit = json.dumps(database)
    coll_lit = json.dumps(collection)
    return (
        f"const d = db.getSiblingDB({db_lit}); "
        f"if (!d.getCollectionNames().includes({coll_lit})) "
        f"{{ throw new Error('collection not found: ' + {coll_lit}); }} "
        f"print(d.getCollection({coll_lit}).countDocuments());"
    )


def count_documents(job: MigrationJob, collection: str) -> int:
    """Count documents in one destination collection.

    Raises:
        VerificationWarning: The query failed or returned no number.
    """
    code, out, err = _run([
        "mongosh", job.destination_endpoint, "--quiet",
        "--eval", _count_eval(job.database_name, collection),
    ])
    last = _last_line(out)
    if code != 0 or not last.isdigit():
        detail = _last_line(err) or last
        raise VerificationWarning(collection, _redact_uri(detail) or f"exit code {code}")
    return int(last)


def dump_units(dump_dir: Path) -> list[str]:
    """Collection names with a data file in *dump_dir* (compressed or not)."""
    if not dump_dir.is_dir():
        return []
    names = set()
    for path in dump_dir.iterdir():
        for suffix in (".bson.gz", ".bson"):
            if path.name.endswith(suffix):
                names.add(path.name[: -len(suffix)])
                break
    return sorted(names)


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

def step_check_prerequisites(job: MigrationJob) -> None:
    """Confirm every required tool is present before anything is touched."""
    missing: list[str] = []
    outputs: list[str] = []
    for tool in REQUIRED_TOOLS:
        ok, out = tool_available(tool)
        if ok:
            print(f"  [ok] {tool} is available")
        else:
            print(f"  [error] {tool} not found or not runnable")
            missing.append(tool)
            outputs.append(out)
    if missing:
        raise ToolMissingError(missing, "\n".join(outputs))


def _probe(label: str, target_args: list[str], attempts: int) -> tuple[bool, str]:
    delay = 1
    out = ""
    for attempt in range(1, attempts + 1):
        ok, out = ping(target_args)
        if ok:
            print(f"  [ok] {label} is reachable")
            return True, out
        if attempt < attempts:
            print(f"  [warn] {label} ping failed (attempt {attempt}/{attempts}), "
                  f"retrying in {delay}s...")
            time.sleep(delay)
            delay = min(delay * 2, MAX_PING_BACKOFF_S)
    print(f"  [error] {label} is not reachable")
    return False, out


def step_probe_connectivity(job: MigrationJob) -> None:
    """Ping source and destination; either one unreachable fails the job."""
    unreachable: list[str] = []
    outputs: list[str] = []
    targets = [
        (f"source ({job.source_endpoint})", ["--host", job.source_endpoint]),
        (f"destination ({_redact_uri(job.destination_endpoint)})",
         [job.destination_endpoint]),
    ]
    for label, args in targets:
        ok, out = _probe(label, args, job.ping_attempts)
        if not ok:
            unreachable.append(label)
            outputs.append(_redact_uri(out))
    if unreachable:
        raise ConnectivityError(
            f"Unreachable: {', '.join(unreachable)}", "\n".join(outputs))


def step_export(job: MigrationJob) -> None:
    """mongodump the whole database into the staging directory."""
    job.staging_path.mkdir(parents=True, exist_ok=True)
    code, out, err = _run([
        "mongodump",
        f"--host={job.source_endpoint}",
        f"--db={job.database_name}",
        f"--out={job.staging_path}",
        "--gzip",
    ])
    # mongodump logs progress on stderr
    out = _combined(out, err)
    if code != 0:
        raise ExportError(
            f"mongodump exited with code {code}; partial dump left in "
            f"{job.staging_path} for inspection",
            _redact_uri(out),
        )
    _echo(out)
    units = dump_units(job.dump_dir)
    if units:
        print(f"  [ok] Exported {len(units)} collection(s) to {job.dump_dir}")
    else:
        print(f"  [warn] mongodump succeeded but {job.dump_dir} holds no collections")


def step_import(job: MigrationJob) -> None:
    """mongorestore the staged dump, dropping each collection it replaces."""
    units = dump_units(job.dump_dir)
    if not units:
        raise ImportFailedError(f"No staged dump found in {job.dump_dir}")
    code, out, err = _run([
        "mongorestore",
        f"--uri={job.destination_endpoint}",
        f"--nsInclude={job.database_name}.*",
        f"--dir={job.staging_path}",
        "--gzip",
        "--drop",
    ])
    out = _combined(out, err)
    if code != 0:
        raise ImportFailedError(
            f"mongorestore exited with code {code}; destination may be "
            "partially replaced",
            _redact_uri(out),
        )
    _echo(out)
    print(f"  [ok] Restored {len(units)} collection(s) into '{job.database_name}'")
    if job.create_indexes:
        step_create_indexes(job)


def step_create_indexes(job: MigrationJob) -> None:
    """Create the secondary indexes in INDEX_DEFINITIONS on the destination.

    Only collections that exist at the destination are touched, so a missing
    collection still shows up as missing during verification.  Individual
    index failures are warnings.
    """
    from pymongo import MongoClient
    from pymongo.errors import OperationFailure, PyMongoError

    print("\n  Creating secondary indexes...")
    client = MongoClient(job.destination_endpoint, serverSelectionTimeoutMS=5000)
    try:
        db = client[job.database_name]
        existing = set(db.list_collection_names())
        for coll_name in job.collection_manifest:
            if coll_name not in existing:
                print(f"  [info] {coll_name}: not present, no indexes created")
                continue
            for keys in INDEX_DEFINITIONS.get(coll_name, []):
                try:
                    index_name = db[coll_name].create_index(keys)
                    print(f"  [ok] {coll_name}: {index_name}")
                except OperationFailure as exc:
                    if exc.code in _INDEX_EXISTS_CODES:
                        print(f"  [info] {coll_name}: index on {keys} already exists")
                    else:
                        print(f"  [warn] {coll_name}: could not create index "
                              f"on {keys}: {exc}")
    except PyMongoError as exc:
        print(f"  [warn] Index creation skipped: {_redact_uri(str(exc))}")
    finally:
        client.close()


def step_verify(job: MigrationJob) -> None:
    """Report destination counts for every manifest collection (best effort)."""
    job.counts = []
    job.warnings = []
    for name in job.collection_manifest:
        try:
            count = count_documents(job, name)
        except VerificationWarning as warning:
            job.warnings.append(warning)
            print(f"  [warn] {warning}")
            continue
        job.counts.append(CollectionCount(name, count))
        print(f"  [info] Collection {name}: {count} documents")
    total = sum(c.document_count for c in job.counts)
    print(f"\n  Verified {len(job.counts)}/{len(job.collection_manifest)} "
          f"collection(s), {total} document(s) total")


def default_stages() -> list[Stage]:
    return [
        Stage("Prerequisite check", JobStatus.CHECKING_PREREQUISITES,
              step_check_prerequisites),
        Stage("Connectivity probe", JobStatus.PROBING_CONNECTIVITY,
              step_probe_connectivity),
        Stage("Export", JobStatus.EXPORTING, step_export),
        Stage("Import", JobStatus.IMPORTING, step_import),
        Stage("Verification", JobStatus.VERIFYING, step_verify),
    ]


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------

def run_job(job: MigrationJob, stages: list[Stage] | None = None) -> MigrationJob:
    """Run *job* through the stages in order, stopping at the first failure.

    Returns the same job, now Completed or Failed.  Nothing is retried and
    nothing is rolled back.
    """
    if job.status is not JobStatus.PENDING:
        raise ValueError(f"Job must be Pending to run, not {job.status.value}")
    if stages is None:
        stages = default_stages()

    for number, stage in enumerate(stages, start=1):
        job.advance(stage.status)
        _banner(f"Stage {number}: {stage.name}")
        try:
            stage.run(job)
        except MigrationError as exc:
            job.fail(str(exc), stage.name)
            print(f"\n  [error] {stage.name} failed: {exc}")
            if exc.output:
                _echo(exc.output)
            return job
        except KeyboardInterrupt:
            job.fail("interrupted", stage.name)
            print(f"\n  [error] {stage.name} interrupted.")
            if stage.status in (JobStatus.EXPORTING, JobStatus.IMPORTING):
                print(f"  [warn] {job.staging_path} is in an undefined state; "
                      "delete it before running again.")
            return job

    job.advance(JobStatus.COMPLETED)
    return job


def remove_staging(job: MigrationJob, keep: Path | None = None) -> bool:
    """Delete the staging directory of a Completed job.

    Refuses a staging path that is the working directory or that contains
    *keep* (usually the artifact output directory).

    Returns:
        True if something was removed.
    """
    if job.status is not JobStatus.COMPLETED:
        raise RuntimeError("Staging is only removed after a Completed job")
    if not job.staging_path.exists():
        return False
    staging = job.staging_path.resolve()
    protected = [Path.cwd().resolve()]
    if keep is not None:
        protected.append(Path(keep).resolve())
    for path in protected:
        if path == staging or staging in path.parents:
            raise ValueError(f"Refusing to remove {staging}: it contains {path}")
    shutil.rmtree(job.staging_path)
    print(f"  [ok] Removed staging directory {job.staging_path}")
    return True


def format_summary(job: MigrationJob) -> str:
    """Plain-text summary of a finished job, safe to print."""
    lines = [f"Status: {job.status.value}"]
    if job.status is JobStatus.FAILED:
        lines.append(f"Failed stage: {job.failed_stage}")
        lines.append(f"Reason: {job.failure_reason}")
    if job.counts or job.warnings:
        lines.append("")
        lines.append(f"{'Collection':<24} Documents")
        lines.append(f"{'-' * 24} ---------")
        counted = {c.name: c.document_count for c in job.counts}
        for name in job.collection_manifest:
            value = counted.get(name)
            lines.append(f"{name:<24} {value if value is not None else 'n/a'}")
        for warning in job.warnings:
            lines.append(f"  [warn] {warning}")
    return "\n".join(lines)
