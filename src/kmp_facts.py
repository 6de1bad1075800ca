"""kmp-migrate: the declarations each Gradle file of a KMP layout must carry.

The tables are plain data; ``kmp_merge`` does the matching and inserting.
"""

from __future__ import annotations

import re

from kmp_merge import Anchor, DocumentKind, Fact

AGP_VERSION = "8.1.0"
KOTLIN_VERSION = "1.9.22"
COMPOSE_VERSION = "1.5.0"
COMPOSE_MATERIAL3_VERSION = "1.1.1"
ACTIVITY_COMPOSE_VERSION = "1.7.2"
COMPOSE_BOM_VERSION = "2025.02.00"

TYPESAFE_PROJECT_ACCESSORS = "TYPESAFE_PROJECT_ACCESSORS"

# (key, value); value is the version string
CATALOG_VERSIONS = (
    ("agp", AGP_VERSION),
    ("kotlin", KOTLIN_VERSION),
    ("compose", COMPOSE_VERSION),
    ("compose-material3", COMPOSE_MATERIAL3_VERSION),
    ("androidx-activityCompose", ACTIVITY_COMPOSE_VERSION),
)

# (key, module, version.ref, literal version)
CATALOG_LIBRARIES = (
    ("compose-bom", "androidx.compose:compose-bom", None, COMPOSE_BOM_VERSION),
    ("kotlin-test", "org.jetbrains.kotlin:kotlin-test", "kotlin", None),
    ("androidx-activity-compose", "androidx.activity:activity-compose", "androidx-activityCompose", None),
    ("compose-ui", "androidx.compose.ui:ui", "compose", None),
    ("compose-ui-tooling", "androidx.compose.ui:ui-tooling", "compose", None),
    ("compose-ui-tooling-preview", "androidx.compose.ui:ui-tooling-preview", "compose", None),
    ("compose-foundation", "androidx.compose.foundation:foundation", "compose", None),
    ("compose-material3", "androidx.compose.material3:material3", "compose-material3", None),
)

# (key, plugin id, version.ref)
CATALOG_PLUGINS = (
    ("android-application", "com.android.application", "agp"),
    ("android-library", "com.android.library", "agp"),
    ("kotlin-android", "org.jetbrains.kotlin.android", "kotlin"),
    ("kotlin-multiplatform", "org.jetbrains.kotlin.multiplatform", "kotlin"),
    ("kotlin-cocoapods", "org.jetbrains.kotlin.native.cocoapods", "kotlin"),
    ("compose-compiler", "org.jetbrains.kotlin.plugin.compose", "kotlin"),
)

SHARED_PLUGINS = ("kotlin-multiplatform", "android-library")
ANDROID_APP_PLUGINS = ("android-application", "kotlin-android")

_KOTLIN_PLUGIN_PREFIX = "org.jetbrains.kotlin."


def key_regex(key: str) -> str:
    """Regex for ``key`` in any spelling Gradle treats as the same alias.

    ``android-application`` also matches ``android.application``,
    ``android_application`` and ``androidapplication``.
    """
    return r"[-_.]?".join(re.escape(part) for part in re.split(r"[-_.]", key))


def _entry_pattern(key: str) -> re.Pattern[str]:
    return re.compile(rf'^\s*"?{key_regex(key)}"?\s*=')


def _plugin_id(key: str) -> str:
    for name, plugin_id, _ in CATALOG_PLUGINS:
        if name == key:
            return plugin_id
    raise KeyError(f"unknown plugin alias: {key}")


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def catalog_version(key: str, version: str) -> Fact:
    return Fact(
        key=f"versions.{key}",
        lines=(f'{key} = "{version}"',),
        anchor=Anchor.section("versions"),
        patterns=(_entry_pattern(key),),
    )


def catalog_library(key: str, module: str, *, version_ref: str | None = None, version: str | None = None) -> Fact:
    if version_ref is not None:
        pin = f'version.ref = "{version_ref}"'
    elif version is not None:
        pin = f'version = "{version}"'
    else:
        raise ValueError(f"library {key} needs a version or a version.ref")
    return Fact(
        key=f"libraries.{key}",
        lines=(f'{key} = {{ module = "{module}", {pin} }}',),
        anchor=Anchor.section("libraries"),
        patterns=(_entry_pattern(key),),
    )


def catalog_plugin(key: str, plugin_id: str, version_ref: str) -> Fact:
    """A ``[plugins]`` entry; also satisfied by any entry declaring the same id."""
    return Fact(
        key=f"plugins.{key}",
        lines=(f'{key} = {{ id = "{plugin_id}", version.ref = "{version_ref}" }}',),
        anchor=Anchor.section("plugins"),
        patterns=(
            _entry_pattern(key),
            re.compile(rf'\bid\s*=\s*"{re.escape(plugin_id)}"'),
        ),
    )


def build_plugin(key: str, *, apply: bool = True) -> Fact:
    """An ``alias(libs.plugins.<key>)`` line inside the ``plugins { }`` block.

    Applying the same plugin by ``id("...")`` or through the ``kotlin("...")``
    shorthand counts as present.
    """
    plugin_id = _plugin_id(key)
    accessor = key.replace("-", ".")
    suffix = "" if apply else " apply false"
    patterns = [
        re.compile(rf"\balias\(\s*libs\.plugins\.{key_regex(key)}\s*\)"),
        re.compile(rf"""\bid\s*\(?\s*["']{re.escape(plugin_id)}["']"""),
    ]
    if plugin_id.startswith(_KOTLIN_PLUGIN_PREFIX):
        short = plugin_id[len(_KOTLIN_PLUGIN_PREFIX) :]
        patterns.append(re.compile(rf"""\bkotlin\(\s*["']{re.escape(short)}["']\s*\)"""))
    return Fact(
        key=f"plugins.{key}",
        lines=(f"    alias(libs.plugins.{accessor}){suffix}",),
        anchor=Anchor.block("plugins"),
        patterns=tuple(patterns),
    )


def settings_feature_preview(name: str = TYPESAFE_PROJECT_ACCESSORS) -> Fact:
    return Fact(
        key=f"feature.{name}",
        lines=(f'enableFeaturePreview("{name}")',),
        anchor=Anchor.top(),
        patterns=(re.compile(rf"""\benableFeaturePreview\(\s*["']{re.escape(name)}["']\s*\)"""),),
    )


def settings_include(module: str) -> Fact:
    return Fact(
        key=f"include.{module}",
        lines=(f'include(":{module}")',),
        anchor=Anchor.after(r"^\s*include\b"),
        patterns=(re.compile(rf"""^\s*include\b.*["']:{re.escape(module)}["']"""),),
    )


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------


def version_catalog_facts() -> list[Fact]:
    facts = [catalog_version(key, version) for key, version in CATALOG_VERSIONS]
    facts += [
        catalog_library(key, module, version_ref=ref, version=version)
        for key, module, ref, version in CATALOG_LIBRARIES
    ]
    facts += [catalog_plugin(key, plugin_id, ref) for key, plugin_id, ref in CATALOG_PLUGINS]
    return facts


def settings_facts(*modules: str) -> list[Fact]:
    return [settings_feature_preview(), *(settings_include(module) for module in modules)]


def root_build_facts() -> list[Fact]:
    return [build_plugin(key, apply=False) for key, _, _ in CATALOG_PLUGINS]


def shared_build_facts() -> list[Fact]:
    return [build_plugin(key) for key in SHARED_PLUGINS]


def android_app_build_facts() -> list[Fact]:
    return [build_plugin(key) for key in ANDROID_APP_PLUGINS]


def default_facts(kind: DocumentKind) -> list[Fact]:
    """The facts the root file of each document kind must carry."""
    if kind is DocumentKind.VERSION_CATALOG:
        return version_catalog_facts()
    if kind is DocumentKind.SETTINGS_SCRIPT:
        return settings_facts("shared")
    return root_build_facts()
