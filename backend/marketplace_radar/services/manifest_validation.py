"""Schema checks for marketplace and plugin manifests.

Validation problems are reported on a ``SchemaValidationResult``; nothing here
raises for bad input.
"""

import ipaddress
import json
import re
from typing import Any, List, Optional, Tuple
from urllib.parse import urlparse

from ..schemas import SchemaValidationResult, ValidationContext

MARKETPLACE_MAX_SIZE = 1024 * 1024
PLUGIN_MAX_SIZE = 512 * 1024
MAX_PLUGINS = 1000
MAX_TAG_LENGTH = 50
MAX_DEPTH = 10
NESTING_TOO_DEEP = "JSON nesting too deep"

NAME_RE = re.compile(r"^[a-zA-Z0-9\-_. ]+$")
SEMVER_RE = re.compile(r"^\d+\.\d+\.\d+")
PATH_RE = re.compile(r"^[\w\-./]+$")

ALLOWED_PERMISSIONS = {
    "read",
    "write",
    "execute",
    "network",
    "filesystem",
    "system",
    "clipboard",
    "notification",
    "camera",
    "microphone",
    "location",
}

DANGEROUS_PATTERNS = [
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"data:text/html", re.IGNORECASE),
    re.compile(r"vbscript:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
]


def _load(text: str, max_size: int) -> Tuple[Any, Optional[str]]:
    if len(text.encode("utf-8")) > max_size:
        return None, f"Content size exceeds maximum of {max_size} bytes"
    try:
        return json.loads(text), None
    except json.JSONDecodeError as exc:
        return None, f"Invalid JSON: {exc.msg} (line {exc.lineno})"
    except RecursionError:
        return None, NESTING_TOO_DEEP


def validate_url(url: Any, allowed_schemes: Tuple[str, ...] = ("https",)) -> List[str]:
    if not isinstance(url, str):
        return ["URL must be a string"]
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return ["Invalid URL format"]
    errors = []
    if parsed.scheme not in allowed_schemes:
        errors.append(f"URL protocol must be one of: {', '.join(allowed_schemes)}")
    host = parsed.hostname or ""
    if host == "localhost":
        errors.append("Localhost URLs are not allowed")
    else:
        try:
            address = ipaddress.ip_address(host)
        except ValueError:
            address = None
        if address is not None and address.is_loopback:
            errors.append("Localhost URLs are not allowed")
        elif address is not None and address.is_private:
            errors.append("Private network URLs are not allowed")
    return errors


def _author_errors(author: Any) -> List[str]:
    if author is None or isinstance(author, str):
        return []
    if isinstance(author, dict) and isinstance(author.get("name"), str):
        return []
    return ["Author must be a string or an object with a name"]


def _string_list_errors(value: Any, label: str, warnings: List[str]) -> List[str]:
    if not isinstance(value, list):
        return [f"{label} must be an array"]
    errors = []
    for item in value:
        if not isinstance(item, str):
            errors.append(f"All {label.lower()} must be strings")
            break
        if len(item) > MAX_TAG_LENGTH:
            warnings.append(f"{label[:-1]} '{item[:20]}...' is too long (max {MAX_TAG_LENGTH} characters)")
    return errors


def validate_plugin_entry(plugin: Any) -> Tuple[List[str], List[str]]:
    """Rules for a plugin declared inline in a marketplace manifest."""
    errors: List[str] = []
    warnings: List[str] = []
    if not isinstance(plugin, dict):
        return ["Plugin must be an object"], warnings

    name = plugin.get("name")
    if not name:
        errors.append("Required field 'name' is missing")
    elif not isinstance(name, str):
        errors.append("Name must be a string")
    elif not NAME_RE.match(name):
        errors.append("Name contains invalid characters")

    if plugin.get("type") not in (None, "plugin"):
        errors.append(f"Invalid type. Expected 'plugin', got '{plugin.get('type')}'")
    if "description" in plugin and not isinstance(plugin["description"], str):
        errors.append("Description must be a string")
    version = plugin.get("version")
    if version is not None and (not isinstance(version, str) or not SEMVER_RE.match(version)):
        warnings.append("Version should follow semantic versioning (x.y.z)")
    errors += _author_errors(plugin.get("author"))
    if "category" in plugin and not isinstance(plugin["category"], str):
        errors.append("Category must be a string")
    for field in ("tags", "keywords"):
        if field in plugin:
            errors += _string_list_errors(plugin[field], field.capitalize(), warnings)
    source = plugin.get("source")
    if source is not None and not isinstance(source, (str, dict)):
        errors.append("Source must be a string or an object")
    return errors, warnings


def _security_errors(data: Any) -> Tuple[List[str], List[str]]:
    errors: List[str] = []

    def check(value: Any, path: str, depth: int) -> int:
        if isinstance(value, str):
            for index, pattern in enumerate(DANGEROUS_PATTERNS, start=1):
                if pattern.search(value):
                    errors.append(f"Dangerous content detected at {path} (pattern {index})")
            return depth
        if depth > MAX_DEPTH:
            return depth
        deepest = depth
        if isinstance(value, dict):
            for key, item in value.items():
                deepest = max(deepest, check(item, f"{path}.{key}", depth + 1))
        elif isinstance(value, list):
            for index, item in enumerate(value):
                deepest = max(deepest, check(item, f"{path}[{index}]", depth + 1))
        return deepest

    depth = check(data, "root", 0)
    if depth > MAX_DEPTH:
        errors.append(f"JSON nesting depth ({depth}) exceeds maximum allowed ({MAX_DEPTH})")
    return errors, []


def validate_marketplace_manifest(
    text: str, context: Optional[ValidationContext] = None
) -> SchemaValidationResult:
    context = context or ValidationContext()
    data, load_error = _load(text, context.max_size or MARKETPLACE_MAX_SIZE)
    if load_error:
        return SchemaValidationResult(is_valid=False, schema_type="marketplace", errors=[load_error])
    if not isinstance(data, dict):
        return SchemaValidationResult(
            is_valid=False, schema_type="marketplace", errors=["Manifest must be a JSON object"]
        )

    errors: List[str] = []
    warnings: List[str] = []
    for field in ("name", "plugins"):
        if field not in data or data[field] in (None, ""):
            errors.append(f"Required field '{field}' is missing")

    if data.get("type") not in (None, "marketplace"):
        errors.append(f"Invalid type. Expected 'marketplace', got '{data.get('type')}'")
    name = data.get("name")
    if name is not None and not isinstance(name, str):
        errors.append("Name must be a string")
    elif name and not NAME_RE.match(name):
        errors.append("Name contains invalid characters")

    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    version = data.get("version", metadata.get("version"))
    if version is not None and (not isinstance(version, str) or not SEMVER_RE.match(version)):
        warnings.append("Version should follow semantic versioning (x.y.z)")

    owner = data.get("owner")
    if owner is None:
        warnings.append("Manifest does not declare an owner")
    else:
        errors += [e.replace("Author", "Owner") for e in _author_errors(owner)]

    if "tags" in data:
        errors += _string_list_errors(data["tags"], "Tags", warnings)
    if data.get("website"):
        url_errors = validate_url(data["website"])
        if url_errors:
            errors.append(f"Invalid website URL: {url_errors[0]}")

    plugins = data.get("plugins")
    if plugins is not None:
        if not isinstance(plugins, list):
            errors.append("Plugins must be an array")
        elif len(plugins) > MAX_PLUGINS:
            errors.append(f"Too many plugins (max {MAX_PLUGINS})")
        else:
            for index, plugin in enumerate(plugins, start=1):
                plugin_errors, plugin_warnings = validate_plugin_entry(plugin)
                errors += [f"Plugin {index}: {e}" for e in plugin_errors]
                warnings += [f"Plugin {index}: {w}" for w in plugin_warnings]

    if context.strict_mode:
        security_errors, security_warnings = _security_errors(data)
        errors += security_errors
        warnings += security_warnings

    return SchemaValidationResult(
        is_valid=not errors,
        schema_type="marketplace",
        errors=errors,
        warnings=warnings,
        data=data if not errors else None,
    )


def validate_plugin_manifest(
    text: str, context: Optional[ValidationContext] = None
) -> SchemaValidationResult:
    context = context or ValidationContext()
    data, load_error = _load(text, context.max_size or PLUGIN_MAX_SIZE)
    if load_error:
        return SchemaValidationResult(is_valid=False, schema_type="plugin", errors=[load_error])

    errors, warnings = validate_plugin_entry(data)
    if not isinstance(data, dict):
        return SchemaValidationResult(is_valid=False, schema_type="plugin", errors=errors)

    main = data.get("main")
    if main is not None and (not isinstance(main, str) or not PATH_RE.match(main)):
        errors.append("Main file path contains invalid characters")

    files = data.get("files")
    if files is not None:
        if not isinstance(files, list):
            errors.append("Files must be an array")
        else:
            for path in files:
                if not isinstance(path, str):
                    errors.append("All files must be strings")
                elif ".." in path:
                    errors.append(f"File path '{path}' contains path traversal")
                elif not PATH_RE.match(path):
                    errors.append(f"File path '{path}' contains invalid characters")

    dependencies = data.get("dependencies")
    if dependencies is not None:
        if not isinstance(dependencies, dict):
            errors.append("Dependencies must be an object")
        elif not all(isinstance(v, str) for v in dependencies.values()):
            errors.append("Dependency names and versions must be strings")

    permissions = data.get("permissions")
    if permissions is not None:
        if not isinstance(permissions, list):
            errors.append("Permissions must be an array")
        else:
            for permission in permissions:
                if not isinstance(permission, str):
                    errors.append("All permissions must be strings")
                elif permission not in ALLOWED_PERMISSIONS:
                    warnings.append(f"Unknown permission: {permission}")

    bugs = data.get("bugs")
    urls = {
        "homepage": data.get("homepage"),
        "repository": data.get("repository") if isinstance(data.get("repository"), str) else None,
        "bugs.url": bugs.get("url") if isinstance(bugs, dict) else None,
    }
    for field, value in urls.items():
        if value:
            url_errors = validate_url(value, ("https", "http"))
            if url_errors:
                errors.append(f"Invalid {field} URL: {url_errors[0]}")

    if context.strict_mode:
        security_errors, security_warnings = _security_errors(data)
        errors += security_errors
        warnings += security_warnings

    return SchemaValidationResult(
        is_valid=not errors,
        schema_type="plugin",
        errors=errors,
        warnings=warnings,
        data=data if not errors else None,
    )


def validate_manifest(text: str, context: Optional[ValidationContext] = None) -> SchemaValidationResult:
    """Pick the marketplace or plugin rules from the manifest's own shape."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        return SchemaValidationResult(is_valid=False, errors=[f"Failed to parse JSON: {exc.msg}"])
    except RecursionError:
        return SchemaValidationResult(is_valid=False, errors=[NESTING_TOO_DEEP])
    if isinstance(data, dict) and (
        data.get("type") == "marketplace"
        or (data.get("type") != "plugin" and isinstance(data.get("plugins"), list))
    ):
        return validate_marketplace_manifest(text, context)
    return validate_plugin_manifest(text, context)
