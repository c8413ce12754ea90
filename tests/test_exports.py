"""Tests for component export normalization and import rewriting."""

from chat.exports import normalize_component_exports, transform_imports


class TestNormalizeComponentExports:
    """Tests for normalize_component_exports."""

    def test_renames_default_function(self):
        """A default-exported function is renamed to App."""
        code = "export default function MyComponent() { return <div/>; }"
        assert normalize_component_exports(code) == (
            "export default function App() { return <div/>; }"
        )

    def test_named_function_exported_by_name(self):
        """A function exported by name at the end becomes App."""
        code = "function Counter() {\n  return null;\n}\n\nexport default Counter;"
        result = normalize_component_exports(code)

        assert "function App()" in result
        assert "Counter" not in result
        assert result.endswith("export default App;")

    def test_memo_wrapper(self):
        """memo-wrapped defaults are assigned to App."""
        result = normalize_component_exports("export default memo(MyComponent);")

        assert result.startswith("const App = memo(MyComponent);")
        assert result.endswith("export default App;")
        assert result.count("export default") == 1

    def test_arrow_default(self):
        """An anonymous arrow default is assigned to App."""
        result = normalize_component_exports("export default () => {\n  return null;\n};")

        assert result.startswith("const App = () =>")
        assert result.endswith("export default App;")

    def test_named_const_export(self):
        """A named const export becomes the default App export."""
        assert normalize_component_exports("export const Dashboard = () => <div/>;") == (
            "const App = () => <div/>\nexport default App;"
        )

    def test_already_app(self):
        """Code already exporting App keeps a single default export."""
        code = "function App() {\n  return null;\n}\nexport default App;"
        assert normalize_component_exports(code) == code

    def test_no_export_unchanged(self):
        """Code without exports is only trimmed."""
        assert normalize_component_exports("  const x = 1;  ") == "const x = 1;"

    def test_strips_leading_block_comment(self):
        """A leading license-style block comment is removed."""
        code = "/* header */\nexport default function Thing() {}"
        assert normalize_component_exports(code) == "export default function App() {}"


class TestTransformImports:
    """Tests for transform_imports."""

    def test_rewrites_extra_packages(self):
        """Packages outside the core map are loaded from esm.sh."""
        code = (
            'import React from "react";\n'
            'import { format } from "date-fns";\n'
            "import confetti from 'canvas-confetti';\n"
            'import { useFireproof } from "use-fireproof";'
        )
        result = transform_imports(code)

        assert 'import React from "react";' in result
        assert 'import { format } from "https://esm.sh/date-fns";' in result
        assert "import confetti from 'https://esm.sh/canvas-confetti';" in result
        assert 'import { useFireproof } from "use-fireproof";' in result

    def test_leaves_relative_and_url_imports(self):
        """Relative paths and full URLs are untouched."""
        code = 'import "./styles.css";\nimport x from "https://cdn.example.com/x.js";'
        assert transform_imports(code) == code

    def test_side_effect_import(self):
        """Bare side-effect imports are rewritten too."""
        assert transform_imports('import "lodash";') == 'import "https://esm.sh/lodash";'
