"""Tests for shipyard.diagnostics — bundler output parsers."""

from shipyard.contracts import Diagnostic
from shipyard.diagnostics import (
    fallback_diagnostic,
    files_with_errors,
    parse_diagnostics,
    parse_esbuild,
    parse_rollup,
    parse_tsc,
    render_diagnostics,
    strip_ansi,
)


TSC_PAREN = "src/App.tsx(12,5): error TS2339: Property 'foo' does not exist on type 'Window & typeof globalThis'."
TSC_PRETTY = "src/main.ts:3:10 - error TS1005: ';' expected."

ESBUILD = """\
✘ [ERROR] Expected ")" but found "}"

    src/components/Card.tsx:8:2:
      8 │   }
        ╵   ^

1 error
"""

ROLLUP = '[vite]: Rollup failed to resolve import "clsx" from "src/lib/utils.ts".'


class TestParsers:
    def test_tsc_paren_style(self):
        (d,) = parse_tsc(TSC_PAREN)
        assert d.file == "src/App.tsx"
        assert (d.line, d.column) == (12, 5)
        assert d.code == "TS2339"
        assert d.severity == "error"
        assert d.message.startswith("Property 'foo'")

    def test_tsc_pretty_style(self):
        (d,) = parse_tsc(TSC_PRETTY)
        assert d.file == "src/main.ts"
        assert d.code == "TS1005"

    def test_esbuild_block_with_location(self):
        (d,) = parse_esbuild(ESBUILD)
        assert d.message == 'Expected ")" but found "}"'
        assert d.file == "src/components/Card.tsx"
        assert (d.line, d.column) == (8, 2)

    def test_rollup_unresolved_import(self):
        (d,) = parse_rollup(ROLLUP)
        assert d.file == "src/lib/utils.ts"
        assert d.message == 'Cannot resolve import "clsx"'

    def test_generic_only_when_nothing_specific(self):
        diags = parse_diagnostics("src/x.js:4:1: error: boom")
        assert len(diags) == 1
        assert diags[0].file == "src/x.js"
        assert diags[0].message == "boom"

    def test_ansi_codes_are_stripped(self):
        colored = "\x1b[31m" + TSC_PRETTY + "\x1b[0m"
        assert strip_ansi(colored) == TSC_PRETTY
        assert parse_diagnostics(colored)[0].code == "TS1005"

    def test_duplicates_removed(self):
        diags = parse_diagnostics(TSC_PAREN + "\n" + TSC_PAREN)
        assert len(diags) == 1

    def test_mixed_output(self):
        diags = parse_diagnostics("\n".join([TSC_PAREN, ROLLUP]))
        assert [d.file for d in diags] == ["src/App.tsx", "src/lib/utils.ts"]

    def test_unrecognised_output(self):
        assert parse_diagnostics("npm ERR! something odd") == []


class TestHelpers:
    def test_fallback_carries_tail(self):
        output = "\n".join(f"line {i}" for i in range(100))
        d = fallback_diagnostic(output, reason="bundler exited with code 1")
        assert d.message.startswith("bundler exited with code 1:")
        assert "line 99" in d.message
        assert "line 10\n" not in d.message
        assert d.file == ""

    def test_fallback_without_output(self):
        assert "(no output)" in fallback_diagnostic("").message

    def test_files_with_errors_ignores_warnings_and_unlocated(self):
        diags = [
            Diagnostic(file="a.ts", message="x"),
            Diagnostic(file="b.ts", message="y", severity="warning"),
            Diagnostic(message="z"),
            Diagnostic(file="a.ts", message="again"),
        ]
        assert files_with_errors(diags) == ["a.ts"]

    def test_render_limits_output(self):
        diags = [Diagnostic(file="a.ts", line=i, message="m") for i in range(1, 6)]
        text = render_diagnostics(diags, limit=2)
        assert text.splitlines() == ["a.ts:1 error: m", "a.ts:2 error: m", "... and 3 more"]
