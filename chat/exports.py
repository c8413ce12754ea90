"""Normalize generated component code for publishing."""

import re

CORE_IMPORT_MAP = frozenset(
    [
        "react",
        "react-dom",
        "react-dom/client",
        "use-fireproof",
        "call-ai",
        "use-vibes",
    ]
)

ESM_CDN = "https://esm.sh/"

_EXPORT_DEFAULT_APP_AT_END = re.compile(r"export\s+default\s+App\s*;?\s*\Z")
_EXPORT_DEFAULT_NAME_AT_END = re.compile(r"export\s+default\s+(\w+)\s*;?\s*\Z")

_BARE_IMPORT = re.compile(
    r"import\s+(?:(?:\{[^}]*\}|\*\s+as\s+\w+|\w+)\s+from\s+)?(['\"])([^'\"./][^'\"]*)\1;?"
)


def _ensure_export_default_app(code: str) -> str:
    code = code.rstrip()
    uses_semicolons = code.endswith(";")
    if uses_semicolons:
        code = code.rstrip(";") + ";"

    if not _EXPORT_DEFAULT_APP_AT_END.search(code):
        separator = "\n\n" if "\n" in code else " "
        code += f"{separator}export default App{';' if uses_semicolons else ''}"
    return code


def _normalize_direct_default(code: str) -> str | None:
    """Rewrite an ``export default <expression>`` form, or return None."""
    if re.search(r"export\s+default\s+(React\.)?(memo|forwardRef)\s*\(", code):
        code = re.sub(
            r"export\s+default\s+((React\.)?(memo|forwardRef)\s*\([^)]*\)(\([^)]*\))?)",
            r"const App = \1",
            code,
            count=1,
        )
        return _ensure_export_default_app(code)

    if re.search(r"export\s+default\s+function\s+\w+", code):
        return re.sub(
            r"export\s+default\s+function\s+\w+\s*(\([^)]*\))",
            r"export default function App\1",
            code,
        )

    if re.search(r"export\s+default\s+class\s+\w+", code):
        return re.sub(r"export\s+default\s+class\s+\w+", "export default class App", code)

    if re.search(r"export\s+default\s+(async\s+)?\(", code):
        code = re.sub(r"export\s+default\s+", "const App = ", code, count=1)
        return _ensure_export_default_app(code)

    object_match = re.search(r"export\s+default\s+(\{[\s\S]*?\});?", code)
    if object_match:
        literal = object_match.group(1)
        replacement = (
            f"const AppObject = {literal};\n"
            "const App = AppObject.default || AppObject;\n"
            "export default App;"
        )
        return code[: object_match.start()] + replacement + code[object_match.end() :]

    return None


def _normalize_named_default(code: str) -> str | None:
    """Rewrite ``<declaration> Name ... export default Name``, or return None."""
    match = _EXPORT_DEFAULT_NAME_AT_END.search(code)
    if not match or match.group(1) == "App":
        return None
    name = re.escape(match.group(1))
    uses_semicolons = code.rstrip().endswith(";")

    function_decl = re.compile(rf"function\s+{name}\s*\(")
    if re.search(r"(?:\s|^)function\s+\w+\s*\(", code) and function_decl.search(code):
        code = function_decl.sub("function App(", code, count=1)
        return _EXPORT_DEFAULT_NAME_AT_END.sub("export default App;", code)

    class_decl = re.compile(rf"class\s+{name}\b")
    if re.search(r"(?:\s|^)class\s+\w+", code) and class_decl.search(code):
        code = class_decl.sub("class App", code, count=1)
        return _EXPORT_DEFAULT_NAME_AT_END.sub("export default App;", code)

    variable_decl = re.compile(rf"const\s+{name}\s*=")
    if (
        re.search(r"(?:\s|^)const\s+\w+\s*=\s*(?:\(|React\.memo|React\.forwardRef)", code)
        and variable_decl.search(code)
    ):
        semicolon = ";" if uses_semicolons else ""
        return _EXPORT_DEFAULT_NAME_AT_END.sub(
            f"const App = {match.group(1)}{semicolon}\nexport default App{semicolon}", code
        )

    return None


def _normalize_named_export(code: str) -> str | None:
    """Turn the first named export into the default ``App`` export, or return None."""
    function_export = re.compile(r"export\s+(async\s+)?function\s+(\w+)")
    const_export = re.compile(r"export\s+const\s+(\w+)\s*=")

    function_match = function_export.search(code)
    if function_match:
        prefix = "async " if function_match.group(1) else ""
        code = function_export.sub(f"{prefix}function App", code, count=1)
    elif const_export.search(code):
        code = const_export.sub("const App =", code, count=1)
    else:
        return None

    code = re.sub(r";*\s*\Z", "", code)
    if not _EXPORT_DEFAULT_APP_AT_END.search(code):
        code += "\nexport default App;"
    return code


def _dedupe_default_exports(code: str) -> str:
    bare_exports = len(re.findall(r"export\s+default\s+App", code))
    function_exports = len(re.findall(r"export\s+default\s+function\s+App", code))
    class_exports = len(re.findall(r"export\s+default\s+class\s+App", code))
    if bare_exports + function_exports + class_exports <= 1:
        return code

    bare = re.compile(r"export\s+default\s+App\b;?")
    for declaration, count in (
        ("export default function App", function_exports),
        ("export default class App", class_exports),
    ):
        if count:
            return bare.sub(
                lambda m: "" if declaration in m.string[: m.start()] else m.group(0), code
            )

    last = code.rfind("export default App")
    return bare.sub("", code[:last]) + code[last:]


def normalize_component_exports(code: str) -> str:
    """
    Rewrite a generated component so it has a single ``export default App``.

    Handles default-exported functions, classes, arrow functions, memo and
    forwardRef wrappers and object literals, named declarations exported by
    name at the end of the file, and plain named exports. Code with no
    recognizable export is returned trimmed but otherwise unchanged.

    Args:
        code: Component source.

    Returns:
        The normalized source.
    """
    normalized = code.strip()
    normalized = re.sub(r"\A/\*[\s\S]*?\*/\s*", "", normalized)
    normalized = re.sub(r"\s*/\*[\s\S]*?\*/\Z", "", normalized).strip()

    result = (
        _normalize_direct_default(normalized)
        or _normalize_named_default(normalized)
        or _normalize_named_export(normalized)
    )
    if result is None:
        return normalized

    result = _dedupe_default_exports(result)
    result = re.sub(r";{2,}", ";", result)
    result = re.sub(r"\s+\n", "\n", result)
    return result.strip()


def transform_imports(code: str) -> str:
    """Point bare package imports outside CORE_IMPORT_MAP at the esm.sh CDN."""

    def replace(match: re.Match) -> str:
        quote, path = match.group(1), match.group(2)
        if path in CORE_IMPORT_MAP or "://" in path:
            return match.group(0)
        return match.group(0).replace(f"{quote}{path}{quote}", f"{quote}{ESM_CDN}{path}{quote}")

    return _BARE_IMPORT.sub(replace, code)
