# artifacts.py
from __future__ import annotations

import json
import tarfile
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from . import settings
from .model import STAGES, ArtifactBundle, Job, TriggerContext

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# A successful job with an ArtifactSpec gets its declared paths packed into
#   root/<job>_<ref>.tar.gz
#   root/<job>_<ref>.manifest.json
# The tar is built in a temp file and renamed into place before the bundle
# is registered, so a bundle is either fully visible or not at all.
#
# Visibility:
#   - consumer with explicit needs  -> only the producers it needs
#   - consumer without needs        -> every producer in a strictly earlier stage
#   - expired bundles               -> never served
# ---------------------------------------------------------------------


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _tar_add_path(tar: tarfile.TarFile, workspace: Path, src: Path) -> List[str]:
    """Add src (file/dir) into tar by its workspace-relative path. Returns the stored paths."""
    src = src.resolve()
    if not src.exists():
        return []

    files = [src] if src.is_file() else list(_iter_files_under(src))
    stored: List[str] = []
    for f in files:
        rel = _relpath(f, workspace)
        tar.add(str(f), arcname=rel, recursive=False)
        stored.append(rel)
    return stored


class ArtifactStore:
    """
    File-backed store of named, expiring artifact bundles.

    Append-only: a bundle is immutable once stored. `get` never returns an
    expired bundle, physical deletion happens in `prune`.
    """

    def __init__(
        self,
        root: str | Path = settings.ARTIFACT_DIR,
        *,
        stages: Sequence[str] = STAGES,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.clock = clock
        self._stage_pos = {s: i for i, s in enumerate(stages)}
        self._bundles: Dict[str, ArtifactBundle] = {}
        self._lock = threading.Lock()

    def archive_path(self, name: str) -> Path:
        return self.root / f"{name}.tar.gz"

    def manifest_path(self, name: str) -> Path:
        return self.root / f"{name}.manifest.json"

    # ---- registry ----

    def put(self, bundle: ArtifactBundle) -> None:
        with self._lock:
            if bundle.owner_job in self._bundles:
                raise ValueError(f"artifact bundle for job '{bundle.owner_job}' already stored")
            self._bundles[bundle.owner_job] = bundle

    def get(self, job_name: str, consumer: Optional[Job] = None) -> Optional[ArtifactBundle]:
        """
        Bundle produced by `job_name`, or None when missing, expired, or not
        visible to `consumer`.
        """
        with self._lock:
            bundle = self._bundles.get(job_name)
        if bundle is None or bundle.expired(self.clock()):
            return None
        if consumer is not None and not self._visible(bundle, consumer):
            return None
        return bundle

    def visible_to(self, consumer: Job) -> List[ArtifactBundle]:
        with self._lock:
            owners = list(self._bundles)
        found = [self.get(owner, consumer) for owner in owners]
        return [b for b in found if b is not None]

    def _visible(self, bundle: ArtifactBundle, consumer: Job) -> bool:
        if consumer.needs is not None:
            return bundle.owner_job in consumer.needs
        return self._stage_pos[bundle.stage] < self._stage_pos[consumer.stage]

    def discard(self, job_name: str) -> None:
        """Drop a bundle (canceled jobs). Files go with it."""
        with self._lock:
            bundle = self._bundles.pop(job_name, None)
        if bundle is not None:
            self.archive_path(bundle.name).unlink(missing_ok=True)
            self.manifest_path(bundle.name).unlink(missing_ok=True)

    def prune(self) -> List[str]:
        """Physically delete expired bundles. Returns their names."""
        now = self.clock()
        with self._lock:
            expired = [b for b in self._bundles.values() if b.expired(now)]
            for b in expired:
                del self._bundles[b.owner_job]
        for b in expired:
            self.archive_path(b.name).unlink(missing_ok=True)
            self.manifest_path(b.name).unlink(missing_ok=True)
        return [b.name for b in expired]

    # ---- filesystem ----

    def collect(self, job: Job, ctx: TriggerContext, workspace: str | Path) -> ArtifactBundle:
        """
        Pack whatever exists at the job's artifact paths and publish the bundle.
        """
        if job.artifacts is None:
            raise ValueError(f"job '{job.name}' declares no artifacts")

        ws = Path(workspace).resolve()
        name = job.artifacts.bundle_name(job.name, ctx.ref_name).replace("/", "-")
        art = self.archive_path(name)
        tmp = art.with_suffix(".gz.tmp")
        created = self.clock()

        stored: List[str] = []
        try:
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for entry in job.artifacts.paths:
                    stored.extend(_tar_add_path(tar, ws, ws / entry))
            tmp.replace(art)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

        manifest = {
            "owner_job": job.name,
            "stage": job.stage,
            "name": name,
            "paths": stored,
            "expire_in_seconds": int(job.artifacts.expire_in.total_seconds()),
            "created_at": created.isoformat(),
            "generated_at_unix": int(time.time()),
        }
        self.manifest_path(name).write_text(json.dumps(manifest, sort_keys=True, indent=2), encoding="utf-8")

        bundle = ArtifactBundle(
            owner_job=job.name,
            stage=job.stage,
            name=name,
            paths=tuple(stored),
            expire_in=job.artifacts.expire_in,
            created_at=created,
            location=art,
        )
        self.put(bundle)
        return bundle

    def restore(self, bundle: ArtifactBundle, workspace: str | Path) -> None:
        """Extract a bundle into a consumer's workspace."""
        if bundle.location is None or not bundle.location.exists():
            return
        with tarfile.open(str(bundle.location), mode="r:gz") as tar:
            tar.extractall(path=str(Path(workspace).resolve()))

    def read_manifest(self, bundle: ArtifactBundle) -> dict:
        return json.loads(self.manifest_path(bundle.name).read_text(encoding="utf-8"))


