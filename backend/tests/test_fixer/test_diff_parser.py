"""Tests for unified-diff parsing and working-tree change synthesis."""

from apex.fixer.diff_parser import PATCH_EXPLANATION, parse_unified_diff, synthesize_file_change

GIT_DIFF = """I fixed the image.
diff --git a/src/App.tsx b/src/App.tsx
index 83db48f..bf269f4 100644
--- a/src/App.tsx
+++ b/src/App.tsx
@@ -10,3 +10,3 @@ export function App() {
   return (
-    <img src="/logo.png" />
+    <img src="/logo.png" alt="Acme" />
   );
Done.
"""

SVN_DIFF = """Index: public/index.html
===================================================================
--- public/index.html
+++ public/index.html
@@ -1,2 +1,2 @@
-<html>
+<html lang="en">
 <head>
"""

PLAIN_DIFF = """--- a/src/a.css\t2024-01-01
+++ b/src/a.css\t2024-01-02
@@ -1 +1 @@
-color: #999;
+color: #595959;
--- a/src/b.css
+++ b/src/b.css
@@ -3 +3 @@
-background: #eee;
+background: #fff;
"""


class TestParseUnifiedDiff:
    def test_git_style(self):
        fixes = parse_unified_diff(GIT_DIFF, "v1")
        assert len(fixes) == 1
        fix = fixes[0]
        assert fix.file_path == "src/App.tsx"
        assert fix.original_code == '  return (\n    <img src="/logo.png" />\n  );'
        assert fix.fixed_code == '  return (\n    <img src="/logo.png" alt="Acme" />\n  );'
        assert fix.violation_id == "v1"
        assert fix.explanation == PATCH_EXPLANATION

    def test_svn_style(self):
        fixes = parse_unified_diff(SVN_DIFF)
        assert [f.file_path for f in fixes] == ["public/index.html"]
        assert fixes[0].fixed_code.startswith('<html lang="en">')

    def test_plain_diff_multiple_files(self):
        fixes = parse_unified_diff(PLAIN_DIFF)
        assert [f.file_path for f in fixes] == ["src/a.css", "src/b.css"]
        assert fixes[1].original_code == "background: #eee;"

    def test_prose_only(self):
        assert parse_unified_diff("I could not find the file.") == []
        assert parse_unified_diff("") == []


class TestSynthesize:
    def test_single_change_with_context(self):
        before = "a\nb\n<img>\nd\ne\n"
        after = "a\nb\n<img alt=''>\nd\ne\n"
        fix = synthesize_file_change("index.html", before, after, "v9")
        assert fix.original_code == "b\n<img>\nd"
        assert fix.fixed_code == "b\n<img alt=''>\nd"
        assert fix.violation_id == "v9"

    def test_spans_first_to_last_change(self):
        before = "1\n2\n3\n4\n5\n6"
        after = "1\nX\n3\n4\nY\n6"
        fix = synthesize_file_change("f.txt", before, after)
        assert fix.original_code == "1\n2\n3\n4\n5\n6"
        assert fix.fixed_code == "1\nX\n3\n4\nY\n6"

    def test_unchanged(self):
        assert synthesize_file_change("f", "same", "same") is None

    def test_new_file(self):
        fix = synthesize_file_change("new.css", "", ".sr-only { position: absolute; }")
        assert fix.original_code == ""
        assert fix.fixed_code == ".sr-only { position: absolute; }"
