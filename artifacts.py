#!/usr/bin/env python3
"""Deployment artifacts written after a Completed migration.

Three files point the application at the new Atlas destination:

::

    <output_dir>/
    +-- .env.atlas                      EnvFile
    +-- src/config/database.atlas.js    DbConfigModule
    +-- docker-compose.atlas.yml        OrchestrationDescriptor

Rendering is pure: the same destination, database and settings always give
the same text apart from the first "Generated" line.  Secrets other than the
destination URI are emitted as placeholders the operator has to replace.
"""

import os
import stat
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from migration import JobStatus, MigrationJob

ENV_FILE_PATH = Path(".env.atlas")
DB_CONFIG_PATH = Path("src") / "config" / "database.atlas.js"
COMPOSE_PATH = Path("docker-compose.atlas.yml")

PLACEHOLDER_API_KEY = "your-secure-api-key-here"
PLACEHOLDER_JWT_SECRET = "your-jwt-secret-here"
PLACEHOLDER_EMAIL_USER = "your-email@gmail.com"
PLACEHOLDER_EMAIL_PASS = "your-app-password"

# Connection defaults baked into the generated database module.
POOL_SIZE = 10
SERVER_SELECTION_TIMEOUT_MS = 5000
SOCKET_TIMEOUT_MS = 45000


class ArtifactKind(Enum):
    ENV_FILE = "EnvFile"
    DB_CONFIG_MODULE = "DbConfigModule"
    ORCHESTRATION_DESCRIPTOR = "OrchestrationDescriptor"


@dataclass(frozen=True)
class GeneratedArtifact:
    path: Path
    content: str
    kind: ArtifactKind


@dataclass(frozen=True)
class AppSettings:
    """Fixed application defaults rendered into the artifacts."""

    node_env: str = "production"
    port: int = 3002
    jwt_expires_in: str = "7d"
    email_host: str = "smtp.gmail.com"
    email_port: int = 587
    max_file_size: int = 10 * 1024 * 1024
    upload_path: str = "./uploads"
    cors_origin: str = "http://localhost:3000"
    rate_limit_window_ms: int = 15 * 60 * 1000
    rate_limit_max_requests: int = 100


DEFAULT_SETTINGS = AppSettings()


def _stamp(generated_at: datetime, comment: str) -> str:
    return f"{comment} Generated by migrate_to_atlas.py at {generated_at.isoformat()}"


def render_env_file(destination_uri: str, database: str,
                    settings: AppSettings, generated_at: datetime) -> str:
    return f"""{_stamp(generated_at, "#")}
# MongoDB Atlas Configuration
MONGODB_URI={destination_uri}
MONGODB_DATABASE={database}

# Application Configuration
NODE_ENV={settings.node_env}
PORT={settings.port}

# API Configuration
API_KEY={PLACEHOLDER_API_KEY}
NEXT_PUBLIC_API_KEY={PLACEHOLDER_API_KEY}

# JWT Configuration
JWT_SECRET={PLACEHOLDER_JWT_SECRET}
JWT_EXPIRES_IN={settings.jwt_expires_in}

# Email Configuration (if needed)
EMAIL_HOST={settings.email_host}
EMAIL_PORT={settings.email_port}
EMAIL_USER={PLACEHOLDER_EMAIL_USER}
EMAIL_PASS={PLACEHOLDER_EMAIL_PASS}

# File Upload Configuration
MAX_FILE_SIZE={settings.max_file_size}
UPLOAD_PATH={settings.upload_path}

# CORS Configuration
CORS_ORIGIN={settings.cors_origin}

# Rate Limiting
RATE_LIMIT_WINDOW_MS={settings.rate_limit_window_ms}
RATE_LIMIT_MAX_REQUESTS={settings.rate_limit_max_requests}
"""


def render_db_config_module(generated_at: datetime) -> str:
    return f"""{_stamp(generated_at, "//")}
const mongoose = require('mongoose');

const connectDB = async () => {{
  try {{
    const conn = await mongoose.connect(process.env.MONGODB_URI, {{
      maxPoolSize: {POOL_SIZE},
      serverSelectionTimeoutMS: {SERVER_SELECTION_TIMEOUT_MS},
      socketTimeoutMS: {SOCKET_TIMEOUT_MS},
    }});

    console.log(`MongoDB Atlas Connected: ${{conn.connection.host}}`);
  }} catch (error) {{
    console.error('Database connection error:', error);
    process.exit(1);
  }}
}};

module.exports = connectDB;
"""


def render_compose_descriptor(settings: AppSettings, generated_at: datetime) -> str:
    # ${VAR} stays literal: compose resolves it from .env at deploy time.
    return f"""{_stamp(generated_at, "#")}
services:
  app:
    build: .
    ports:
      - "{settings.port}:{settings.port}"
    environment:
      - NODE_ENV={settings.node_env}
      - MONGODB_URI=${{MONGODB_URI}}
      - MONGODB_DATABASE=${{MONGODB_DATABASE}}
      - API_KEY=${{API_KEY}}
      - JWT_SECRET=${{JWT_SECRET}}
    volumes:
      - {settings.upload_path}:/app/uploads
    restart: unless-stopped

  # MongoDB service removed - using Atlas instead
  # mongodb:
  #   image: mongo:latest
  #   ports:
  #     - "27017:27017"
  #   volumes:
  #     - mongodb_data:/data/db

# volumes:
#   mongodb_data:
"""


def render_artifacts(destination_uri: str, database: str,
                     settings: AppSettings = DEFAULT_SETTINGS,
                     generated_at: datetime | None = None) -> list[GeneratedArtifact]:
    """Render all three artifacts.  Paths are relative to the output directory."""
    if generated_at is None:
        generated_at = datetime.now(timezone.utc).replace(microsecond=0)
    return [
        GeneratedArtifact(
            ENV_FILE_PATH,
            render_env_file(destination_uri, database, settings, generated_at),
            ArtifactKind.ENV_FILE,
        ),
        GeneratedArtifact(
            DB_CONFIG_PATH,
            render_db_config_module(generated_at),
            ArtifactKind.DB_CONFIG_MODULE,
        ),
        GeneratedArtifact(
            COMPOSE_PATH,
            render_compose_descriptor(settings, generated_at),
            ArtifactKind.ORCHESTRATION_DESCRIPTOR,
        ),
    ]


def _new_file_mode() -> int:
    """Mode a plain open() would give a new file under the current umask."""
    umask = os.umask(0)
    os.umask(umask)
    return 0o666 & ~umask


def _write_whole(path: Path, content: str, private: bool = False) -> None:
    """Replace *path* with *content* in one rename; no partial file is left behind.

    An existing file keeps its mode.  A new file gets the umask default, or
    owner-only access when *private* is set.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        mode = stat.S_IMODE(path.stat().st_mode)
    elif private:
        mode = 0o600
    else:
        mode = _new_file_mode()
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as fh:
            fh.write(content)
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def write_artifacts(artifacts: list[GeneratedArtifact], output_dir: Path) -> list[Path]:
    """Write every artifact under *output_dir*, overwriting earlier runs.

    Returns:
        Absolute paths written, in the order given.
    """
    written: list[Path] = []
    for artifact in artifacts:
        target = (Path(output_dir) / artifact.path).resolve()
        _write_whole(target, artifact.content,
                     private=artifact.kind is ArtifactKind.ENV_FILE)
        print(f"  [ok] Generated {artifact.kind.value}: {target}")
        written.append(target)
    return written


def emit_artifacts(job: MigrationJob, output_dir: Path,
                   settings: AppSettings = DEFAULT_SETTINGS,
                   generated_at: datetime | None = None) -> list[Path]:
    """Render and write the artifacts for a Completed job."""
    if job.status is not JobStatus.COMPLETED:
        raise ValueError(
            f"Artifacts are only generated for Completed jobs, not {job.status.value}")
    artifacts = render_artifacts(job.destination_endpoint, job.database_name,
                                 settings, generated_at)
    return write_artifacts(artifacts, output_dir)
