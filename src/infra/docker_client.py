"""
Container runtime client backed by the docker CLI.

Runs one harness container per job:
- The commit is passed through environment variables; the harness clones it
- The harness writes its structured report to /output/report.json
- stdout/stderr are streamed line by line into a bounded buffer
- A cancellable timer kills the container at the wall-clock limit

Only the Container Runner talks to this module.
"""

import json
import logging
import shutil
import subprocess
import threading
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol

from src.infra import config
from src.scheduler.entities import CommitTarget
from src.scheduler.errors import ConfigurationError, ImageBuildError, RuntimeUnavailableError

logger = logging.getLogger(__name__)

REPORT_FILENAME = "report.json"
MAX_LOG_LINES = 2000
DOCKER_COMMAND_TIMEOUT_SECONDS = 30
BUILD_TIMEOUT_SECONDS = 1800

# docker run exits 125 when docker itself fails, before the harness starts
DOCKER_RUN_DAEMON_EXIT = 125
DAEMON_UNREACHABLE_MARKERS = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "error during connect",
)


@dataclass
class ContainerRun:
    """Outcome of one container execution as seen by the runtime."""

    container_name: str
    container_id: Optional[str]
    exit_code: Optional[int]
    report: Optional[dict]
    logs: str
    timed_out: bool = False
    report_error: Optional[str] = None


class ContainerClient(Protocol):
    """Protocol for the container runtime used by the Container Runner."""

    def ping(self) -> bool: ...

    def run_container(
        self,
        image: str,
        target: CommitTarget,
        timeout_seconds: float,
        name: str,
        on_output: Optional[Callable[[str], None]] = None,
    ) -> ContainerRun: ...

    def remove_container(self, name: str) -> None: ...


def truncate_output(text: str, limit: int = config.MAX_LOG_BYTES) -> str:
    """Keep the tail of text within limit bytes."""
    encoded = text.encode("utf-8", errors="replace")
    if len(encoded) <= limit:
        return text
    clipped = encoded[-limit:].decode("utf-8", errors="ignore")
    return f"<truncated>...\n{clipped}"


def authenticated_remote(remote: str, token: str) -> str:
    """Embed a token in an https git remote so private build contexts can be fetched."""
    if not token or not remote.startswith("https://") or "@" in remote.split("/", 3)[2]:
        return remote
    return remote.replace("https://", f"https://{token}@", 1)


class DockerCliClient:
    """
    ContainerClient implementation that shells out to the docker binary.

    Containers run without --rm; the caller removes them explicitly via
    remove_container() so cleanup happens on every exit path.
    """

    def __init__(
        self,
        docker_bin: Optional[str] = None,
        output_root: str | Path = config.CONTAINER_OUTPUT_ROOT,
        max_log_bytes: int = config.MAX_LOG_BYTES,
        cpus: str = "1.0",
        memory: str = "2g",
    ):
        self._docker_bin = docker_bin or config.DOCKER_BIN or None
        self.output_root = Path(output_root)
        self.max_log_bytes = max_log_bytes
        self.cpus = cpus
        self.memory = memory

    def _resolve_bin(self) -> str:
        """Locate the docker binary or raise RuntimeUnavailableError."""
        if self._docker_bin:
            return self._docker_bin

        docker_bin = shutil.which("docker")
        if not docker_bin:
            for candidate in ("/usr/bin/docker", "/usr/local/bin/docker"):
                if Path(candidate).exists():
                    docker_bin = candidate
                    break
        if not docker_bin:
            raise RuntimeUnavailableError("docker binary not found")

        self._docker_bin = docker_bin
        return docker_bin

    def _output_dir(self, name: str) -> Path:
        return self.output_root / name

    # =========================================================================
    # Runtime Health
    # =========================================================================

    def ping(self) -> bool:
        """Return True if the docker daemon answers."""
        try:
            completed = subprocess.run(
                [self._resolve_bin(), "info", "--format", "{{.ServerVersion}}"],
                capture_output=True,
                text=True,
                timeout=DOCKER_COMMAND_TIMEOUT_SECONDS,
                check=False,
            )
        except (RuntimeUnavailableError, OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"Container runtime ping failed: {e}")
            return False

        if completed.returncode != 0:
            logger.warning(
                f"Container runtime ping failed: {completed.stderr.strip()[:200]}"
            )
            return False
        return True

    # =========================================================================
    # Execution
    # =========================================================================

    def _build_run_command(
        self,
        docker_bin: str,
        image: str,
        target: CommitTarget,
        name: str,
        output_dir: Path,
        cidfile: Path,
    ) -> list[str]:
        env = {
            "COMMIT_SHA": target.commit_sha,
            "COMMIT_REF": target.ref,
            "REPO_ID": target.repo_id,
            "DELIVERABLE_ID": target.deliverable_id,
            "REQUESTED_BY": target.requested_by,
            "CLONE_URL": target.clone_url or "",
        }

        cmd = [
            docker_bin,
            "run",
            "--name",
            name,
            "--cidfile",
            str(cidfile),
            "--security-opt",
            "no-new-privileges=true",
            "--cap-drop",
            "ALL",
            "--pids-limit",
            "256",
            "--cpus",
            self.cpus,
            "--memory",
            self.memory,
        ]
        for key, value in env.items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.extend(["-v", f"{output_dir.resolve()}:/output:rw", image])
        return cmd

    def run_container(
        self,
        image: str,
        target: CommitTarget,
        timeout_seconds: float,
        name: str,
        on_output: Optional[Callable[[str], None]] = None,
    ) -> ContainerRun:
        """
        Run the harness image for one commit and block until it exits.

        Args:
            image: Harness image tag
            target: Commit under test
            timeout_seconds: Wall-clock limit; the container is killed on expiry
            name: Unique container name (used for kill and removal)
            on_output: Optional callback invoked with each output line

        Returns:
            ContainerRun with the parsed report, if one was written

        Raises:
            RuntimeUnavailableError: If docker is missing or the daemon is down
            ConfigurationError: If docker refuses to start the image
        """
        docker_bin = self._resolve_bin()

        output_dir = self._output_dir(name)
        output_dir.mkdir(parents=True, exist_ok=True)
        try:
            output_dir.chmod(0o777)
        except OSError:
            # Container user may differ from ours; widening is best-effort
            pass
        cidfile = self.output_root / f"{name}.cid"
        cidfile.unlink(missing_ok=True)

        cmd = self._build_run_command(docker_bin, image, target, name, output_dir, cidfile)
        logger.info(
            f"Starting container {name} (image={image}, "
            f"commit={target.commit_sha[:8]}, timeout={timeout_seconds}s)"
        )

        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
            )
        except OSError as e:
            raise RuntimeUnavailableError(f"Cannot start docker: {e}") from e

        timed_out = threading.Event()

        def _on_timeout() -> None:
            timed_out.set()
            logger.warning(f"Container {name} exceeded {timeout_seconds}s; killing")
            self._kill(docker_bin, name, process)

        timer = threading.Timer(timeout_seconds, _on_timeout)
        timer.daemon = True
        timer.start()

        lines: deque[str] = deque(maxlen=MAX_LOG_LINES)
        try:
            for line in process.stdout:
                lines.append(line)
                if on_output is not None:
                    try:
                        on_output(line)
                    except Exception as e:
                        logger.warning(f"Output consumer failed for {name}: {e}")
            exit_code = process.wait()
        finally:
            timer.cancel()

        logs = truncate_output("".join(lines), self.max_log_bytes)

        if exit_code == DOCKER_RUN_DAEMON_EXIT and not timed_out.is_set():
            detail = logs.strip()[-500:]
            if any(marker in logs.lower() for marker in DAEMON_UNREACHABLE_MARKERS):
                raise RuntimeUnavailableError(detail)
            # Image missing, pull denied or a rejected run flag
            raise ConfigurationError(f"docker run rejected {image}: {detail}")

        report, report_error = self._read_report(output_dir)
        container_id = self._read_container_id(cidfile)

        logger.info(
            f"Container {name} finished: exit_code={exit_code}, "
            f"timed_out={timed_out.is_set()}, report={'yes' if report else 'no'}"
        )

        return ContainerRun(
            container_name=name,
            container_id=container_id,
            exit_code=exit_code,
            report=report,
            logs=logs,
            timed_out=timed_out.is_set(),
            report_error=report_error,
        )

    def _kill(self, docker_bin: str, name: str, process: subprocess.Popen) -> None:
        """Kill a running container and its attached docker client process."""
        try:
            subprocess.run(
                [docker_bin, "kill", name],
                capture_output=True,
                text=True,
                timeout=DOCKER_COMMAND_TIMEOUT_SECONDS,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"docker kill failed for {name}: {e}")
        try:
            process.kill()
        except OSError as e:
            logger.error(f"Error terminating docker client for {name}: {e}")

    def _read_report(self, output_dir: Path) -> tuple[Optional[dict], Optional[str]]:
        report_path = output_dir / REPORT_FILENAME
        if not report_path.exists():
            return None, "report file not written"
        try:
            report = json.loads(report_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            return None, f"failed to parse report: {e}"
        if not isinstance(report, dict):
            return None, "report is not a JSON object"
        return report, None

    def _read_container_id(self, cidfile: Path) -> Optional[str]:
        try:
            return cidfile.read_text(encoding="utf-8").strip() or None
        except OSError:
            return None

    # =========================================================================
    # Cleanup
    # =========================================================================

    def remove_container(self, name: str) -> None:
        """Force-remove a container and its scratch files. Never raises."""
        try:
            completed = subprocess.run(
                [self._resolve_bin(), "rm", "-f", name],
                capture_output=True,
                text=True,
                timeout=DOCKER_COMMAND_TIMEOUT_SECONDS,
                check=False,
            )
            if completed.returncode != 0 and "No such container" not in completed.stderr:
                logger.warning(
                    f"docker rm failed for {name}: {completed.stderr.strip()[:200]}"
                )
        except (RuntimeUnavailableError, OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"Could not remove container {name}: {e}")

        (self.output_root / f"{name}.cid").unlink(missing_ok=True)
        shutil.rmtree(self._output_dir(name), ignore_errors=True)

    # =========================================================================
    # Image Lifecycle
    # =========================================================================

    def list_images(self) -> list[dict]:
        """List local images as dicts (Repository, Tag, ID, CreatedAt, ...)."""
        try:
            completed = subprocess.run(
                [self._resolve_bin(), "images", "--format", "{{json .}}"],
                capture_output=True,
                text=True,
                timeout=DOCKER_COMMAND_TIMEOUT_SECONDS,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise RuntimeUnavailableError(f"docker images failed: {e}") from e

        if completed.returncode != 0:
            raise RuntimeUnavailableError(completed.stderr.strip()[:500])

        images = []
        for line in completed.stdout.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                images.append(json.loads(line))
            except ValueError:
                logger.warning(f"Skipping unparseable image line: {line[:120]}")
        return images

    def build_image(
        self,
        remote: str,
        tag: str,
        dockerfile: Optional[str] = None,
        on_output: Optional[Callable[[str], None]] = None,
    ) -> str:
        """
        Build a harness image from a build context (path or git URL).

        Returns:
            The image tag

        Raises:
            RuntimeUnavailableError: If docker cannot be invoked
            ImageBuildError: If the build fails
        """
        cmd = [self._resolve_bin(), "build", "--tag", tag]
        if dockerfile:
            cmd.extend(["--file", dockerfile])
        cmd.append(remote)

        logger.info(f"Building image {tag} from {remote.rsplit('@', 1)[-1]}")
        try:
            completed = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=BUILD_TIMEOUT_SECONDS,
                check=False,
            )
        except OSError as e:
            raise RuntimeUnavailableError(f"docker build failed to start: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise ImageBuildError(tag, f"build exceeded {BUILD_TIMEOUT_SECONDS}s") from e

        if on_output is not None:
            for line in completed.stdout.splitlines():
                on_output(line)

        if completed.returncode != 0:
            raise ImageBuildError(tag, truncate_output(completed.stderr.strip(), 2000))

        logger.info(f"Built image {tag}")
        return tag
