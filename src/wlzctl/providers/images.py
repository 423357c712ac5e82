"""Build and publish the Worklenz backend and frontend images."""
from __future__ import annotations

import re
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

import yaml

COMPONENTS = ("backend", "frontend")

_KEY_LINE = re.compile(r"^[ ]*(?P<key>[A-Za-z0-9_.\-\"']+):(?:[ \t]|\r?\n|$)")
_IMAGE_LINE = re.compile(
    r"^(?P<head>[ ]*image:[ \t]*)(?P<value>[^#\r\n]*?)(?P<comment>[ \t]+#[^\r\n]*)?(?P<eol>\r?\n?)$"
)


class ImageError(RuntimeError):
    """Base class for image build and push failures."""

    hint: str = ""


class BuildFailedError(ImageError):
    """Raised when an image cannot be built or is missing locally."""

    def __init__(self, component: str, message: str, *, hint: str = "") -> None:
        """Name the *component* that failed."""
        super().__init__(f"Failed to build {component} image: {message}")
        self.component = component
        self.hint = hint or f"Inspect the {component} Dockerfile and rerun `wlzctl build`."


class PushFailedError(ImageError):
    """Raised when login or pushing an image fails."""

    def __init__(self, reference: str, message: str) -> None:
        """Name the image *reference* that failed."""
        super().__init__(f"Failed to push {reference}: {message}")
        self.reference = reference
        self.hint = "Run `docker login` and check the repository permissions."


@dataclass(slots=True)
class BuiltImage:
    """An image produced by :meth:`ImageBuilder.build`."""

    component: str
    reference: str


@dataclass(slots=True)
class ImageBuilder:
    """Wrap ``docker build``/``docker push`` for the application images."""

    backend_context: Path
    frontend_context: Path
    compose_file: Path
    docker_bin: str = "docker"

    def reference(self, component: str, username: str, tag: str) -> str:
        """Return ``<username>/worklenz-<component>:<tag>``."""
        if not username.strip():
            raise BuildFailedError(component, "a Docker Hub username is required.")
        return f"{username.strip()}/worklenz-{component}:{tag}"

    def context_for(self, component: str) -> Path:
        """Return the build context directory of *component*."""
        if component == "backend":
            return self.backend_context
        if component == "frontend":
            return self.frontend_context
        raise BuildFailedError(component, "unknown component.")

    def build(self, username: str, tag: str = "latest") -> list[BuiltImage]:
        """Build both images, then point the compose file at them."""
        built: list[BuiltImage] = []
        for component in COMPONENTS:
            reference = self.reference(component, username, tag)
            context = self.context_for(component)
            dockerfile = context / "Dockerfile"
            if not dockerfile.exists():
                raise BuildFailedError(component, f"{dockerfile} does not exist.")
            result = self._run_docker(
                ["build", "--file", str(dockerfile), "--tag", reference, str(context)],
                capture_output=False,
            )
            if result.returncode != 0:
                raise BuildFailedError(component, f"docker build exited {result.returncode}.")
            built.append(BuiltImage(component=component, reference=reference))
        self.update_compose_images({image.component: image.reference for image in built})
        return built

    def image_exists(self, reference: str) -> bool:
        """Return True when *reference* is present in the local image store."""
        result = self._run_docker(["image", "inspect", reference])
        return result.returncode == 0

    def push(self, username: str, tag: str = "latest", *, login: bool = True) -> list[str]:
        """Push both images; they must already exist locally."""
        references = [self.reference(component, username, tag) for component in COMPONENTS]
        for component, reference in zip(COMPONENTS, references, strict=True):
            if not self.image_exists(reference):
                raise BuildFailedError(
                    component,
                    f"{reference} not found locally.",
                    hint="Build the images first with `wlzctl build`.",
                )
        if login:
            result = self._run_docker(["login"], capture_output=False)
            if result.returncode != 0:
                raise PushFailedError(references[0], "docker login failed.")
        for reference in references:
            result = self._run_docker(["push", reference], capture_output=False)
            if result.returncode != 0:
                raise PushFailedError(reference, f"docker push exited {result.returncode}.")
        return references

    def update_compose_images(self, images: dict[str, str]) -> bool:
        """Set ``services.<component>.image`` in the compose file.

        Only the ``image:`` lines of the named services are rewritten, so
        comments, anchors and key order survive. The result is parsed again
        and must differ from the original in those values alone. The previous
        file is kept as ``<file>.bak``. Returns True when the file changed.
        """
        if not self.compose_file.exists():
            raise BuildFailedError(
                "compose", f"{self.compose_file} does not exist; cannot update image references."
            )
        text = self.compose_file.read_text(encoding="utf-8")
        try:
            document = yaml.safe_load(text) or {}
        except yaml.YAMLError as exc:
            raise BuildFailedError("compose", f"cannot parse {self.compose_file}: {exc}") from exc
        services = document.get("services") if isinstance(document, dict) else None
        if not isinstance(services, dict):
            raise BuildFailedError("compose", f"{self.compose_file} has no services mapping.")

        changed = False
        for component, reference in images.items():
            service = services.get(component)
            if not isinstance(service, dict):
                raise BuildFailedError(component, f"service '{component}' not found in compose file.")
            if service.get("image") != reference:
                service["image"] = reference
                changed = True
        if not changed:
            return False

        updated = _rewrite_images(text, images)
        try:
            reparsed = yaml.safe_load(updated)
        except yaml.YAMLError:
            reparsed = None
        if reparsed != document:
            raise BuildFailedError(
                "compose",
                f"cannot update image references in {self.compose_file} in place.",
                hint="Set the backend and frontend `image:` keys by hand.",
            )

        shutil.copy2(self.compose_file, self.compose_file.with_name(f"{self.compose_file.name}.bak"))
        self.compose_file.write_text(updated, encoding="utf-8")
        return True

    # ------------------------------------------------------------------
    def _run_docker(
        self, args: Sequence[str], *, capture_output: bool = True
    ) -> subprocess.CompletedProcess[str]:
        command = [self.docker_bin, *args]
        try:
            return subprocess.run(  # noqa: S603, S607
                command,
                capture_output=capture_output,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ImageError(f"{self.docker_bin} not found: {exc}") from exc


def _rewrite_images(text: str, images: Mapping[str, str]) -> str:
    """Return *text* with the ``image:`` line of each service in *images* replaced.

    A service without its own ``image:`` key gets one as its first child.
    """
    lines = text.splitlines(keepends=True)
    in_services = False
    service_indent: int | None = None
    current: str | None = None
    headers: dict[str, int] = {}
    child_indents: dict[str, int] = {}
    replaced: set[str] = set()
    for index, line in enumerate(lines):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        indent = len(line) - len(line.lstrip(" "))
        match = _KEY_LINE.match(line)
        if indent == 0:
            in_services = match is not None and match.group("key") == "services"
            current = None
            continue
        if not in_services or match is None:
            continue
        key = match.group("key").strip("\"'")
        if service_indent is None:
            service_indent = indent
        if indent == service_indent:
            current = key
            headers[key] = index
            continue
        if current not in images:
            continue
        child_indent = child_indents.setdefault(current, indent)
        if indent == child_indent and key == "image":
            value = _IMAGE_LINE.match(line)
            if value is None:
                continue
            lines[index] = (
                f"{value.group('head').rstrip()} {images[current]}"
                f"{value.group('comment') or ''}{value.group('eol')}"
            )
            replaced.add(current)

    missing = [name for name in images if name not in replaced and name in headers]
    for name in sorted(missing, key=headers.__getitem__, reverse=True):
        at = headers[name]
        if not lines[at].endswith("\n"):
            lines[at] += "\n"
        indent = child_indents.get(name, (service_indent or 0) + 2)
        lines.insert(at + 1, f"{' ' * indent}image: {images[name]}\n")
    return "".join(lines)


__all__ = [
    "BuildFailedError",
    "BuiltImage",
    "ImageBuilder",
    "ImageError",
    "PushFailedError",
]
