"""Reporting strategy: publish a change set as a local patch bundle.

A bundle is a directory named after the session::

    <publish_dir>/<session_id>/
        changes.json    full CodeChanges document
        SUMMARY.md      human-readable summary
        files/...       new content of every created or modified file

The returned ``PublishedChange`` points at the bundle with a ``file://``
URL. Nothing is pushed to a remote repository.
"""

import uuid
from pathlib import Path, PurePosixPath

import aiofiles
import structlog

from fixflow.engine.types import StepContext
from fixflow.exceptions import ContractError
from fixflow.models.analysis import ChangeType, CodeChanges, PublishedChange

log = structlog.get_logger(__name__)


def _safe_relative(path: str) -> PurePosixPath:
    relative = PurePosixPath(path.replace("\\", "/"))
    if relative.is_absolute() or ".." in relative.parts or not relative.parts:
        raise ContractError(f"Unsafe path in change set: {path!r}")
    return relative


class PatchBundlePublisher:
    """Write change sets to a bundle directory."""

    name = "patch-bundle-publisher"

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    async def execute(self, payload: CodeChanges, context: StepContext) -> PublishedChange:
        if not isinstance(payload, CodeChanges):
            raise ContractError(f"Publication requires CodeChanges, got {type(payload).__name__}")
        if not payload.files:
            raise ContractError("Refusing to publish an empty change set")

        item = context.item
        targets = [(_safe_relative(change.path), change) for change in payload.files]
        bundle = self.directory / context.session_id
        files_dir = bundle / "files"
        bundle.mkdir(parents=True, exist_ok=True)

        context.report_progress("Writing change bundle", 30)
        for relative, change in targets:
            if change.change_type == ChangeType.DELETED:
                continue
            target = files_dir / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            await self._write(target, change.content)

        await self._write(bundle / "changes.json", payload.model_dump_json(indent=2))
        await self._write(bundle / "SUMMARY.md", self._summary(payload, item.title, item.url))

        published = PublishedChange(
            reference=context.session_id,
            url=bundle.resolve().as_uri(),
            branch=payload.branch or f"fixflow/{context.session_id}",
            title=f"Fix: {item.title}",
            files_changed=len(payload.files),
        )
        log.info(
            "change_bundle_published",
            item_id=item.id,
            path=str(bundle),
            files=published.files_changed,
        )
        return published

    @staticmethod
    async def _write(path: Path, content: str) -> None:
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(content)
        # Atomic rename - safe on POSIX when same filesystem
        tmp_path.replace(path)

    @staticmethod
    def _summary(changes: CodeChanges, title: str, url: str) -> str:
        lines = [f"# Fix: {title}", ""]
        if url:
            lines += [f"QA report: {url}", ""]
        lines += [changes.summary, "", "## Files", ""]
        for change in changes.files:
            description = f": {change.description}" if change.description else ""
            lines.append(f"- `{change.path}` ({change.change_type.value}){description}")
        lines.append("")
        return "\n".join(lines)
