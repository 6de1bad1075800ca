"""kmp-migrate: lay a Kotlin Multiplatform structure over an Android or iOS project."""

from __future__ import annotations

import argparse
import os
import re
import shutil
import subprocess
import sys
from pathlib import Path

import httpx

import kmp_facts
from kmp_merge import DocumentKind, MalformedDocumentError, atomic_write, merge_file, read_document, write_text_atomic

_TEMPLATES_DIR = Path(__file__).parent / "templates"
TEMPLATES_ENV = "KMP_TEMPLATES_DIR"

PACKAGE_NAME_RE = re.compile(r"[a-z][a-z0-9_]*(\.[a-z0-9_]+)+")

VERSION_CATALOG = "gradle/libs.versions.toml"
GRADLE_PROPERTIES = "gradle.properties"
WRAPPER_DIR = "gradle/wrapper"

SOURCE_SETS = ("commonMain", "commonTest", "androidMain", "androidTest", "iosMain", "iosTest")
SKELETON_DIRS = (
    *(f"shared/src/{source_set}/kotlin" for source_set in SOURCE_SETS),
    *(f"shared/src/{source_set}/resources" for source_set in SOURCE_SETS if source_set.endswith("Main")),
    "androidApp",
    "iosApp",
    WRAPPER_DIR,
)

ANDROID_MARKERS = ("build.gradle", "build.gradle.kts", "app/build.gradle", "app/build.gradle.kts")

# Top-level entries that stay put when an iOS project moves into iosApp/
IOS_MOVE_EXCLUDES = {
    "iosApp",
    "androidApp",
    "shared",
    "gradle",
    ".gradle",
    ".git",
    "gradlew",
    "gradlew.bat",
    "gradle.properties",
}
IOS_MOVE_EXCLUDED_SUFFIXES = {".kts", ".toml"}

GRADLE_VERSION = "8.5"
WRAPPER_PROPERTIES = f"""\
distributionBase=GRADLE_USER_HOME
distributionPath=wrapper/dists
distributionUrl=https\\://services.gradle.org/distributions/gradle-{GRADLE_VERSION}-bin.zip
zipStoreBase=GRADLE_USER_HOME
zipStorePath=wrapper/dists
"""
WRAPPER_JAR_URL = "https://raw.githubusercontent.com/gradle/gradle/master/gradle/wrapper/gradle-wrapper.jar"
WRAPPER_MODES = ("download", "gradle", "skip")


class InputValidationError(ValueError):
    """User input that is re-prompted for, never fatal."""


class FilesystemAccessError(OSError):
    """A path that does not exist or cannot be read."""


class ExternalToolError(RuntimeError):
    """A download or external command failed."""

    def __init__(self, message: str, hint: str = "") -> None:
        super().__init__(message)
        self.hint = hint


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def _info(message: str) -> None:
    print(f"kmp-init: {message}")


def _warn(message: str) -> None:
    print(f"kmp-init: warning: {message}", file=sys.stderr)


def _error(message: str) -> None:
    print(f"kmp-init: error: {message}", file=sys.stderr)


def _status(status: str, rel_path: str) -> None:
    print(f"  {status}: {rel_path}")


# ---------------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------------


def _ask(question: str) -> str:
    print(question, end="", file=sys.stderr, flush=True)
    answer = sys.stdin.readline()
    if not answer:
        raise EOFError("no more input")
    return answer.strip()


def validate_package_name(name: str) -> str:
    """Return ``name`` stripped, or raise InputValidationError."""
    name = name.strip()
    if not name:
        raise InputValidationError("package name cannot be empty")
    if not PACKAGE_NAME_RE.fullmatch(name):
        raise InputValidationError(
            f"invalid package name '{name}': it must start with a lowercase letter, "
            "contain only lowercase letters, digits and underscores, "
            "and have at least two segments separated by dots (e.g. com.example.app)"
        )
    return name


def resolve_project_root(raw: str) -> Path:
    raw = raw.strip()
    if not raw:
        raise InputValidationError("path cannot be empty")
    path = Path(os.path.expandvars(os.path.expanduser(raw)))
    if not path.is_dir():
        raise FilesystemAccessError(f"directory '{path}' does not exist")
    if not os.access(path, os.R_OK | os.X_OK):
        raise FilesystemAccessError(f"could not access directory '{path}', check its permissions")
    return path.resolve()


def detect_project_type(root: Path) -> str | None:
    """Return "android", "ios" or None from the marker files under ``root``."""
    if any((root / marker).is_file() for marker in ANDROID_MARKERS):
        return "android"
    if (root / "Podfile").is_file():
        return "ios"
    if any(root.glob("*.xcodeproj")) or any(root.glob("*.xcworkspace")):
        return "ios"
    if any(root.rglob("project.pbxproj")):
        return "ios"
    return None


def prompt_project_root(initial: str | None = None) -> tuple[Path, str]:
    raw = initial
    while True:
        if raw is None:
            raw = _ask("Enter the full path of the project root directory: ")
        try:
            root = resolve_project_root(raw)
        except (InputValidationError, FilesystemAccessError) as exc:
            _error(str(exc))
            raw = None
            continue
        project_type = detect_project_type(root)
        if project_type is not None:
            _info(f"detected {project_type} project at {root}")
            return root, project_type
        _error(
            f"could not identify the project type of '{root}'. Expected build.gradle or "
            "build.gradle.kts for Android, or a Podfile, .xcodeproj or .xcworkspace for iOS"
        )
        raw = None


def prompt_package_name(initial: str | None = None) -> str:
    raw = initial
    while True:
        if raw is None:
            raw = _ask("Enter package name (ex: com.example.app): ")
        try:
            return validate_package_name(raw)
        except InputValidationError as exc:
            _error(str(exc))
            raw = None


def prompt_yes_no(question: str) -> bool:
    while True:
        answer = _ask(f"{question} (y/n): ").lower()
        if answer.startswith("y"):
            return True
        if answer.startswith("n"):
            return False
        _error("please answer yes or no")


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


def _load_template(templates_dir: Path, name: str, **replacements: str) -> str:
    """Load a template file, substituting ``$placeholder`` keys."""
    path = templates_dir / name
    if not path.is_file():
        available = sorted(p.name for p in templates_dir.glob("*.txt")) if templates_dir.is_dir() else []
        raise FilesystemAccessError(
            f"template file not found: {path} (available: {', '.join(available) or 'none'})"
        )
    content = path.read_text()
    for key, value in replacements.items():
        content = content.replace(key, value)
    return content


def _script_path(root: Path, rel_kts: str) -> Path:
    """The Kotlin DSL script, or its existing Groovy twin when only that exists."""
    kts = root / rel_kts
    groovy = root / rel_kts.removesuffix(".kts")
    if not kts.is_file() and groovy.is_file():
        return groovy
    return kts


# ---------------------------------------------------------------------------
# Gradle configuration
# ---------------------------------------------------------------------------


def _merge(
    root: Path,
    path: Path,
    kind: DocumentKind,
    facts: list,
    templates_dir: Path,
    template: str,
    **replacements: str,
) -> None:
    rendered = None if path.is_file() else _load_template(templates_dir, template, **replacements)
    status = merge_file(path, kind, facts, template=rendered)
    _status(status, str(path.relative_to(root)))


def _create(root: Path, path: Path, templates_dir: Path, template: str, **replacements: str) -> None:
    rel_path = str(path.relative_to(root))
    if path.exists():
        _status("skipped", f"{rel_path} (already exists)")
        return
    write_text_atomic(path, _load_template(templates_dir, template, **replacements))
    _status("created", rel_path)


def write_configuration(root: Path, package_name: str, templates_dir: Path) -> None:
    """Create or merge the root Gradle files and the shared module build script."""
    _merge(
        root,
        root / VERSION_CATALOG,
        DocumentKind.VERSION_CATALOG,
        kmp_facts.version_catalog_facts(),
        templates_dir,
        "version_catalog.txt",
    )
    _merge(
        root,
        _script_path(root, "settings.gradle.kts"),
        DocumentKind.SETTINGS_SCRIPT,
        kmp_facts.settings_facts("shared"),
        templates_dir,
        "settings_gradle.txt",
        **{"$project_name": root.name},
    )
    _merge(
        root,
        _script_path(root, "build.gradle.kts"),
        DocumentKind.BUILD_SCRIPT,
        kmp_facts.root_build_facts(),
        templates_dir,
        "root_build_gradle.txt",
    )
    _create(root, root / GRADLE_PROPERTIES, templates_dir, "gradle_properties.txt")
    _merge(
        root,
        _script_path(root, "shared/build.gradle.kts"),
        DocumentKind.BUILD_SCRIPT,
        kmp_facts.shared_build_facts(),
        templates_dir,
        "shared_build_gradle.txt",
        **{"$shared_namespace": f"{package_name}.shared"},
    )


def create_skeleton(root: Path) -> None:
    for rel_dir in SKELETON_DIRS:
        d = root / rel_dir
        if not d.is_dir():
            d.mkdir(parents=True, exist_ok=True)
            _status("created", f"{rel_dir}/")


# ---------------------------------------------------------------------------
# Moving existing app content
# ---------------------------------------------------------------------------


def rename_module_include(path: Path, old: str, new: str) -> bool:
    """Rewrite ``":old"`` to ``":new"`` on the include lines of a settings script."""
    text = read_document(path)
    module_re = re.compile(rf"""(["']):{re.escape(old)}\1""")

    def rename(match: re.Match) -> str:
        return module_re.sub(lambda m: f"{m.group(1)}:{new}{m.group(1)}", match.group(0))

    updated = re.sub(r"^[ \t]*include\b.*$", rename, text, flags=re.MULTILINE)
    if updated == text:
        return False
    write_text_atomic(path, updated)
    return True


def move_android_app(root: Path, package_name: str, templates_dir: Path) -> None:
    app_dir = root / "app"
    target = root / "androidApp"
    _info("moving app module content to androidApp...")
    shutil.copytree(app_dir, target, symlinks=True, dirs_exist_ok=True)
    shutil.rmtree(app_dir)
    _status("moved", "app/ -> androidApp/")

    settings = _script_path(root, "settings.gradle.kts")
    if settings.is_file():
        if rename_module_include(settings, "app", "androidApp"):
            _status("updated", str(settings.relative_to(root)))
        status = merge_file(settings, DocumentKind.SETTINGS_SCRIPT, [kmp_facts.settings_include("androidApp")])
        if status != "unchanged":
            _status(status, str(settings.relative_to(root)))

    _merge(
        root,
        _script_path(root, "androidApp/build.gradle.kts"),
        DocumentKind.BUILD_SCRIPT,
        kmp_facts.android_app_build_facts(),
        templates_dir,
        "android_app_build_gradle.txt",
        **{"$android_namespace": f"{package_name}.android", "$application_id": package_name},
    )


def move_ios_app(root: Path) -> None:
    target = root / "iosApp"
    target.mkdir(exist_ok=True)
    _info("moving iOS app content to iosApp...")
    for entry in sorted(root.iterdir()):
        if entry.name in IOS_MOVE_EXCLUDES or entry.suffix in IOS_MOVE_EXCLUDED_SUFFIXES:
            continue
        dest = target / entry.name
        if dest.exists() or dest.is_symlink():
            _warn(f"iosApp/{entry.name} already exists, leaving {entry.name} in place")
            continue
        shutil.move(str(entry), str(dest))
        _status("moved", f"{entry.name} -> iosApp/{entry.name}")


# ---------------------------------------------------------------------------
# Gradle wrapper
# ---------------------------------------------------------------------------


def download_wrapper_jar(dest: Path, client: httpx.Client | None = None) -> None:
    owns_client = client is None
    if client is None:
        client = httpx.Client()
    hint = "check your network connection, or rerun with --wrapper gradle to use a local Gradle install"
    try:
        with client.stream("GET", WRAPPER_JAR_URL, follow_redirects=True, timeout=60) as response:
            if response.status_code != 200:
                raise ExternalToolError(
                    f"downloading {WRAPPER_JAR_URL} failed with HTTP {response.status_code}", hint
                )
            with atomic_write(dest) as f:
                for chunk in response.iter_bytes():
                    f.write(chunk)
    except httpx.HTTPError as exc:
        raise ExternalToolError(f"could not download gradle-wrapper.jar: {exc}", hint) from exc
    finally:
        if owns_client:
            client.close()


def run_gradle_wrapper(root: Path) -> None:
    try:
        subprocess.run(
            ["gradle", "wrapper", "--gradle-version", GRADLE_VERSION],
            cwd=root,
            check=True,
        )
    except (subprocess.CalledProcessError, FileNotFoundError) as exc:
        raise ExternalToolError(
            f"failed to create the Gradle wrapper: {exc}",
            "install Gradle (for example `brew install gradle`) and try again",
        ) from exc


def setup_wrapper(root: Path, templates_dir: Path, mode: str = "download", client: httpx.Client | None = None) -> None:
    if mode == "skip":
        return
    wrapper_dir = root / WRAPPER_DIR
    properties = wrapper_dir / "gradle-wrapper.properties"
    jar = wrapper_dir / "gradle-wrapper.jar"
    gradlew = root / "gradlew"
    if gradlew.is_file() and jar.is_file() and properties.is_file():
        _status("skipped", "Gradle wrapper (already exists)")
        return

    _info("setting up Gradle wrapper...")
    if mode == "gradle":
        run_gradle_wrapper(root)
        return

    if not properties.is_file():
        write_text_atomic(properties, WRAPPER_PROPERTIES)
        _status("created", f"{WRAPPER_DIR}/gradle-wrapper.properties")
    if not jar.is_file():
        download_wrapper_jar(jar, client)
        _status("created", f"{WRAPPER_DIR}/gradle-wrapper.jar")
    if not gradlew.is_file():
        write_text_atomic(gradlew, _load_template(templates_dir, "gradlew.txt"), mode=0o755)
        _status("created", "gradlew")
    _create(root, root / "gradlew.bat", templates_dir, "gradlew.bat.txt")


# ---------------------------------------------------------------------------
# Scaffold
# ---------------------------------------------------------------------------


def scaffold(
    root: Path,
    project_type: str,
    package_name: str,
    *,
    templates_dir: Path = _TEMPLATES_DIR,
    move_app: bool | None = None,
    wrapper: str = "download",
    client: httpx.Client | None = None,
) -> int:
    """Bring ``root`` to the KMP layout. Safe to run again on the result."""
    _info("writing Gradle configuration...")
    write_configuration(root, package_name, templates_dir)

    _info("creating KMP directory structure...")
    create_skeleton(root)

    if project_type == "android":
        if (root / "app").is_dir():
            if move_app is None:
                move_app = prompt_yes_no("Do you want to move the existing Android app content to androidApp?")
            if move_app:
                move_android_app(root, package_name, templates_dir)
            else:
                _info("skipping Android app move, only the shared module was set up")
        else:
            _info("no existing Android app found, only the shared module was set up")
    elif project_type == "ios":
        if move_app is None:
            move_app = prompt_yes_no("Do you want to move the existing iOS app content to iosApp?")
        if move_app:
            move_ios_app(root)
        else:
            _info("skipping iOS app move, only the shared module was set up")

    setup_wrapper(root, templates_dir, wrapper, client)

    _info("KMP setup completed successfully!")
    _info("next steps:")
    _info("  1. review the new KMP structure")
    _info("  2. add shared code in shared/src/commonMain/kotlin")
    _info("  3. run ./gradlew build to verify everything works")
    return 0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Add a Kotlin Multiplatform layout to an Android or iOS project.")
    parser.add_argument(
        "--project-root",
        default=None,
        help="Path to the existing project. Prompted for when omitted.",
    )
    parser.add_argument(
        "--package",
        default=None,
        help="Base package name, e.g. com.example.app. Prompted for when omitted.",
    )
    parser.add_argument(
        "--move-app",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Move the existing app into androidApp/ or iosApp/. Prompted for when omitted.",
    )
    parser.add_argument(
        "--wrapper",
        choices=WRAPPER_MODES,
        default="download",
        help="How to provide the Gradle wrapper (default: 'download').",
    )
    parser.add_argument(
        "--templates",
        default=None,
        help=f"Directory holding the file templates. Overridden by ${TEMPLATES_ENV}.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Entry point for the kmp-init command."""
    args = parse_args(argv)

    env_templates = os.environ.get(TEMPLATES_ENV)
    if env_templates:
        templates_dir = Path(env_templates).resolve()
    elif args.templates:
        templates_dir = Path(args.templates).resolve()
    else:
        templates_dir = _TEMPLATES_DIR

    _info("starting KMP setup...")
    try:
        root, project_type = prompt_project_root(args.project_root)
        package_name = prompt_package_name(args.package)
        return scaffold(
            root,
            project_type,
            package_name,
            templates_dir=templates_dir,
            move_app=args.move_app,
            wrapper=args.wrapper,
        )
    except ExternalToolError as exc:
        _error(str(exc))
        if exc.hint:
            _error(exc.hint)
        return 1
    except (OSError, MalformedDocumentError) as exc:
        _error(str(exc))
        return 1
    except EOFError:
        _error("input ended before setup was complete, aborting")
        return 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
