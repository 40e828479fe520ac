#!/usr/bin/env python3
import os
import argparse
import atexit
import logging
import shutil
import stat
import tempfile
import time
import zipfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import socket
import struct
import fcntl

from flask import (
    Flask,
    render_template_string,
    send_file,
    abort,
)
from werkzeug.serving import BaseWSGIServer, make_server

__version__ = "0.3.0"

log = logging.getLogger(__name__)

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080
ARCHIVE_SUFFIX = ".zip"
ENV_TRUE = ("1", "true", "yes", "on")

# ----------------------------
# Errors
# ----------------------------

class BoarError(Exception):
    """A startup failure. The process reports it and exits without serving."""

    def __init__(self, message: str, path: Path | str | None = None):
        super().__init__(message)
        self.path = path

class TargetError(BoarError):
    pass

class ListingError(BoarError):
    pass

class ArchiveError(BoarError):
    pass

# ----------------------------
# Descriptors
# ----------------------------

class TargetKind(Enum):
    FILE = "file"
    DIRECTORY = "dir"

@dataclass(frozen=True)
class FileDescriptor:
    path: Path
    name: str
    size: int

@dataclass(frozen=True)
class ArchiveDescriptor:
    path: Path
    name: str

    @property
    def size(self) -> int:
        # Only known once the archive has been written.
        return self.path.stat().st_size

@dataclass(frozen=True)
class DirectoryDescriptor:
    name: str
    path: Path
    files: tuple[FileDescriptor, ...] = ()
    archive: ArchiveDescriptor | None = None
    child_archives: tuple[ArchiveDescriptor, ...] = ()

@dataclass(frozen=True)
class ServerState:
    """What the server hands out. Never mutated once the server is built."""

    target: DirectoryDescriptor | FileDescriptor
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT

@dataclass(frozen=True)
class ServeConfig:
    target: Path
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    nozip: bool = False
    children: bool = False
    verbose: bool = False

# ----------------------------
# Shared helpers
# ----------------------------

def format_bytes(num: int) -> str:
    units = ["B", "KB", "MB", "GB", "TB", "PB"]
    size = float(num)
    for unit in units:
        if size < 1024 or unit == units[-1]:
            if unit == "B":
                return f"{int(size)} {unit}"
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{num} B"

def _iface_ipv4(ifname: str) -> str | None:
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            ifreq = struct.pack("256s", ifname.encode("utf-8")[:15])
            res = fcntl.ioctl(s.fileno(), 0x8915, ifreq)  # SIOCGIFADDR
        return socket.inet_ntoa(res[20:24])
    except OSError:
        return None

def _guess_fallback_ip() -> str:
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("8.8.8.8", 80))  # no packets are sent
            return s.getsockname()[0]
    except OSError:
        return "127.0.0.1"

def preferred_ips_for_printing(bound_host: str) -> list[str]:
    """Addresses worth printing in the banner: tun first, then eth, then the rest."""
    if bound_host not in ("0.0.0.0", "::"):
        return [bound_host]

    try:
        ifnames = sorted(os.listdir("/sys/class/net"))
    except OSError:
        ifnames = []

    ranked: list[tuple[int, str]] = []
    for ifname in ifnames:
        if ifname == "lo":
            continue
        ip = _iface_ipv4(ifname)
        if not ip or ip.startswith("127."):
            continue
        if ifname.startswith("tun"):
            rank = 0
        elif ifname.startswith("eth"):
            rank = 1
        else:
            rank = 2
        ranked.append((rank, ip))

    ips = [ip for _, ip in sorted(ranked, key=lambda r: r[0])]
    return ips or [_guess_fallback_ip()]

# ----------------------------
# Target inspection + listing
# ----------------------------

def classify_target(path: Path | str) -> TargetKind:
    if not str(path).strip():
        raise TargetError("No directory nor file provided.")
    try:
        st = os.stat(path)
    except OSError as exc:
        raise TargetError(f"cannot stat {path}: {exc.strerror or exc}", path) from exc
    if stat.S_ISDIR(st.st_mode):
        return TargetKind.DIRECTORY
    return TargetKind.FILE

def describe_file(path: Path) -> FileDescriptor:
    try:
        st = path.stat()
    except OSError as exc:
        raise TargetError(f"cannot stat {path}: {exc.strerror or exc}", path) from exc
    return FileDescriptor(path=path, name=path.name, size=st.st_size)

def list_directory(directory: Path) -> tuple[FileDescriptor, ...]:
    """Regular files directly inside ``directory``, in the order the OS returns them.

    Subdirectories are left out. Any unreadable entry fails the whole listing.
    """
    try:
        children = list(directory.iterdir())
    except OSError as exc:
        raise ListingError(f"cannot read directory {directory}: {exc.strerror or exc}", directory) from exc

    entries: list[FileDescriptor] = []
    for p in children:
        try:
            st = p.stat()
        except OSError as exc:
            raise ListingError(f"cannot stat {p}: {exc.strerror or exc}", p) from exc
        if not stat.S_ISREG(st.st_mode):
            continue
        entries.append(FileDescriptor(path=p, name=p.name, size=st.st_size))
    return tuple(entries)

def list_subdirectories(directory: Path) -> list[Path]:
    try:
        return [p for p in directory.iterdir() if p.is_dir() and not p.is_symlink()]
    except OSError as exc:
        raise ListingError(f"cannot read directory {directory}: {exc.strerror or exc}", directory) from exc

# ----------------------------
# Archiving
# ----------------------------

def archive_path_for(directory: Path, workdir: Path) -> Path:
    millis = int(time.time() * 1000)
    stem = directory.name or "root"
    candidate = workdir / f"{stem}-{millis}{ARCHIVE_SUFFIX}"
    while candidate.exists():
        millis += 1
        candidate = workdir / f"{stem}-{millis}{ARCHIVE_SUFFIX}"
    return candidate

def _reraise(err: OSError) -> None:
    raise err

def create_archive(directory: Path, workdir: Path) -> Path:
    """Zip every regular file under ``directory`` into a new archive in ``workdir``.

    Entry names are paths relative to ``directory``. Directories get no entries
    of their own. On failure the partial archive is removed and ArchiveError is
    raised.
    """
    directory = Path(directory)
    workdir = Path(workdir).resolve()
    zip_path = archive_path_for(directory, workdir)
    log.info("Zipping %s", directory)

    count = 0
    try:
        with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED, strict_timestamps=False) as zf:
            for root, dirs, files in os.walk(directory, onerror=_reraise):
                root_p = Path(root)
                # never archive our own output when serving a parent of the workdir
                dirs[:] = sorted(d for d in dirs if (root_p / d).resolve() != workdir)
                for name in sorted(files):
                    p = root_p / name
                    if p == zip_path:
                        continue
                    if not stat.S_ISREG(p.stat().st_mode):
                        continue
                    arcname = p.relative_to(directory).as_posix()
                    log.debug("Adding %s", arcname)
                    zf.write(p, arcname)
                    count += 1
    except OSError as exc:
        zip_path.unlink(missing_ok=True)
        raise ArchiveError(f"failed to archive {directory}: {exc}", directory) from exc

    log.info("Archived %d file(s) from %s into %s (%s)", count, directory, zip_path, format_bytes(zip_path.stat().st_size))
    return zip_path

def remove_archive_dir(workdir: Path) -> None:
    log.info("Removing temporary archives in %s", workdir)
    shutil.rmtree(workdir, ignore_errors=True)

def build_target(config: ServeConfig, workdir: Path | None = None) -> ServerState:
    """Inspect, list and archive the target. Runs once, before the server binds.

    Archives go into ``workdir``; when it is not given a private temp directory
    is created and removed when the process exits.
    """
    target = config.target
    kind = classify_target(target)
    log.info("The argument is a %s: %s", kind.value, target)

    if kind is TargetKind.FILE:
        if config.children:
            log.warning("--children has no effect when serving a single file")
        return ServerState(target=describe_file(target), host=config.host, port=config.port)

    files = list_directory(target)
    archive = None
    child_archives: tuple[ArchiveDescriptor, ...] = ()

    if config.nozip:
        log.info("Archive download disabled")
    else:
        if workdir is None:
            workdir = Path(tempfile.mkdtemp(prefix="boar_"))
            atexit.register(remove_archive_dir, workdir)

        zip_path = create_archive(target, workdir)
        archive = ArchiveDescriptor(path=zip_path, name=f"{target.name or 'root'}{ARCHIVE_SUFFIX}")

        if config.children:
            child_archives = tuple(
                ArchiveDescriptor(path=create_archive(child, workdir), name=f"{child.name}{ARCHIVE_SUFFIX}")
                for child in list_subdirectories(target)
                if child.resolve() != Path(workdir).resolve()
            )

    directory = DirectoryDescriptor(
        name=target.name or str(target),
        path=target,
        files=files,
        archive=archive,
        child_archives=child_archives,
    )
    return ServerState(target=directory, host=config.host, port=config.port)

# ----------------------------
# HTML templates
# ----------------------------

PAGE_STYLE = r'''
    <style>
        body { font-family: Arial; margin: 40px; }
        table { border-collapse: collapse; width: 100%; }
        th, td { padding: 10px; border: 1px solid #ccc; }
        th { text-align: left; }
        td.mono { font-family: ui-monospace, SFMono-Regular, Menlo, Monaco, Consolas, "Liberation Mono", "Courier New", monospace; }
        td.size { white-space: nowrap; text-align: right; }
        .download-all {
            display: inline-block;
            padding: 12px 24px;
            border: 2px solid #4CAF50;
            border-radius: 10px;
            margin-bottom: 20px;
        }
        .hint { color: #666; font-size: 13px; margin-top: 12px; }
    </style>
'''

DIRECTORY_HTML = r'''
<!doctype html>
<html>
<head>
    <meta charset="utf-8">
    <title>{{ title }}</title>
''' + PAGE_STYLE + r'''
</head>
<body>
<h1>{{ directory.name }}</h1>

{% if directory.archive %}
<a class="download-all" id="downloadAll" href="{{ url_for('download_archive') }}">
    Download all as {{ directory.archive.name }} ({{ directory.archive.size|bytes }})
</a>
{% endif %}

<h2>Files</h2>
<table id="filesTable">
    <tr><th>Filename</th><th>Size</th><th>Bytes</th><th>Download</th></tr>
    {% for f in directory.files %}
    <tr class="fileRow">
        <td class="mono">{{ f.name }}</td>
        <td class="size">{{ f.size|bytes }}</td>
        <td class="size">{{ f.size }}</td>
        <td><a href="{{ url_for('download_file', index=loop.index0) }}">Download</a></td>
    </tr>
    {% else %}
    <tr><td colspan="4">No files available.</td></tr>
    {% endfor %}
</table>

{% if directory.child_archives %}
<h2>Folders</h2>
<table id="foldersTable">
    <tr><th>Archive</th><th>Size</th><th>Download</th></tr>
    {% for a in directory.child_archives %}
    <tr class="folderRow">
        <td class="mono">{{ a.name }}</td>
        <td class="size">{{ a.size|bytes }}</td>
        <td><a href="{{ url_for('download_child_archive', index=loop.index0) }}">Download</a></td>
    </tr>
    {% endfor %}
</table>
{% endif %}

{% if directory.archive %}
<p class="hint">
    Tip: <code>curl -L -o "{{ directory.archive.name }}" "{{ url_for('download_archive', _external=True) }}"</code>
</p>
{% endif %}
</body>
</html>
'''

FILE_HTML = r'''
<!doctype html>
<html>
<head>
    <meta charset="utf-8">
    <title>{{ title }}</title>
''' + PAGE_STYLE + r'''
</head>
<body>
<h1>{{ file.name }}</h1>

<table id="fileTable">
    <tr><th>Filename</th><td class="mono" id="fileName">{{ file.name }}</td></tr>
    <tr><th>Size</th><td class="size"><span id="fileSize">{{ file.size }}</span> bytes ({{ file.size|bytes }})</td></tr>
</table>

<p><a class="download-all" id="download" href="{{ url_for('download_single') }}">Download</a></p>

<p class="hint">
    Tip: <code>curl -L -o "{{ file.name }}" "{{ url_for('download_single', _external=True) }}"</code>
</p>
</body>
</html>
'''

def render_directory(directory: DirectoryDescriptor) -> str:
    log.debug("Rendering %s at %s", directory.name, directory.path)
    return render_template_string(DIRECTORY_HTML, title=f"Boar - {directory.name}", directory=directory)

def render_file(file: FileDescriptor) -> str:
    log.debug("Rendering %s at %s", file.name, file.path)
    return render_template_string(FILE_HTML, title=f"Boar - {file.name}", file=file)

# ----------------------------
# Flask app + server
# ----------------------------

def _send_attachment(path: Path, download_name: str):
    try:
        return send_file(path, as_attachment=True, download_name=download_name, conditional=False)
    except FileNotFoundError:
        log.warning("%s disappeared since startup", path)
        abort(404)

def create_app(state: ServerState) -> Flask:
    app = Flask(__name__)
    app.add_template_filter(format_bytes, "bytes")
    target = state.target

    if isinstance(target, DirectoryDescriptor):

        @app.route("/", methods=["GET"], endpoint="index")
        def index():
            return render_directory(target)

        @app.route("/files/<int:index>", methods=["GET"], endpoint="download_file")
        def download_file(index):
            if index >= len(target.files):
                abort(404)
            f = target.files[index]
            return _send_attachment(f.path, f.name)

        @app.route("/archive", methods=["GET"], endpoint="download_archive")
        def download_archive():
            if target.archive is None:
                abort(404)
            return _send_attachment(target.archive.path, target.archive.name)

        @app.route("/children/<int:index>", methods=["GET"], endpoint="download_child_archive")
        def download_child_archive(index):
            if index >= len(target.child_archives):
                abort(404)
            a = target.child_archives[index]
            return _send_attachment(a.path, a.name)

    else:

        @app.route("/", methods=["GET"], endpoint="index")
        def index():
            return render_file(target)

        @app.route("/download", methods=["GET"], endpoint="download_single")
        def download_single():
            return _send_attachment(target.path, target.name)

    return app

def create_server(state: ServerState, app: Flask | None = None) -> BaseWSGIServer:
    # werkzeug closes the socket and exits with status 1 if the bind fails.
    return make_server(state.host, state.port, app or create_app(state), threaded=True)

def serve(state: ServerState) -> None:
    server = create_server(state)
    log.info("Listening on %s:%d", state.host, server.server_port)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        log.info("Shutting down")
    finally:
        server.server_close()

def print_serve_banner(state: ServerState) -> None:
    ip = preferred_ips_for_printing(state.host)[0]
    base = f"http://{ip}:{state.port}"
    target = state.target

    print("\n=== Boar ===")
    print(f"Web UI: {base}/")
    if isinstance(target, DirectoryDescriptor):
        print(f"Serving {len(target.files)} file(s) from {target.path}")
        print(f"Download pattern: {base}/files/<index>")
        if target.archive is not None:
            print(f"Download all: {base}/archive ({target.archive.name})")
            print(f'  curl -L -o "{target.archive.name}" "{base}/archive"')
            print(f'  wget -O "{target.archive.name}" "{base}/archive"')
        for i, a in enumerate(target.child_archives):
            print(f"Folder archive: {base}/children/{i} ({a.name})")
    else:
        print(f"Serving {target.path} ({format_bytes(target.size)})")
        print(f'  curl -L -o "{target.name}" "{base}/download"')
        print(f'  wget -O "{target.name}" "{base}/download"')
    print()

# ----------------------------
# Main CLI
# ----------------------------

def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ENV_TRUE

def _port(value: str) -> int:
    try:
        port = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid port: {value!r}") from exc
    if not 1 <= port <= 65535:
        raise argparse.ArgumentTypeError("port must be between 1 and 65535")
    return port

def build_parser() -> argparse.ArgumentParser:
    # Defaults come from BOAR_* so explicit flags win over the environment.
    parser = argparse.ArgumentParser(prog="boar", description="A simple CLI to share files through http.")
    parser.add_argument("path", help="File or directory to serve")
    parser.add_argument("-p", "--port", type=_port, default=os.environ.get("BOAR_PORT", str(DEFAULT_PORT)),
                        help="The port to listen on (env: BOAR_PORT)")
    parser.add_argument("-nz", "--nozip", action="store_true", default=_env_flag("BOAR_NOZIP"),
                        help="Disable the zip download feature (env: BOAR_NOZIP)")
    parser.add_argument("-c", "--children", action="store_true", default=_env_flag("BOAR_CHILDREN"),
                        help="Also serve each subdirectory as its own ZIP (env: BOAR_CHILDREN)")
    parser.add_argument("--host", default=os.environ.get("BOAR_HOST", DEFAULT_HOST),
                        help="Host to bind to (env: BOAR_HOST)")
    parser.add_argument("--verbose", action="store_true", help="Log every archived file")
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    return parser

def parse_args(argv: list[str] | None = None) -> ServeConfig:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.path.strip():
        parser.error("No directory nor file provided.")

    return ServeConfig(
        target=Path(args.path).expanduser().resolve(),
        host=args.host,
        port=args.port,
        nozip=args.nozip,
        children=args.children,
        verbose=args.verbose,
    )

def main(argv: list[str] | None = None) -> None:
    config = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if config.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    log.info("Boar is running...")

    try:
        state = build_target(config)
    except BoarError as exc:
        log.error("%s", exc)
        raise SystemExit(f"Error: {exc}") from exc

    print_serve_banner(state)
    try:
        serve(state)
    except SystemExit:
        log.error("Could not listen on %s:%d", config.host, config.port)
        raise

if __name__ == "__main__":
    main()
