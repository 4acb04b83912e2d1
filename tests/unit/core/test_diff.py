"""Tests for unified diff parsing."""

from mcp_pair_review.core.diff import (
    format_line_ranges,
    parse_hunk_lines,
    parse_unified_diff,
)

MULTI_FILE_DIFF = """\
diff --git a/src/app.js b/src/app.js
index 1111111..2222222 100644
--- a/src/app.js
+++ b/src/app.js
@@ -1,4 +1,5 @@
 const a = 1;
-const b = 2;
+const b = 3;
+const c = 4;
 function f() {
   return a;
diff --git a/src/new.py b/src/new.py
new file mode 100644
index 0000000..3333333
--- /dev/null
+++ b/src/new.py
@@ -0,0 +1,2 @@
+def g():
+    return 1
diff --git a/old.txt b/old.txt
deleted file mode 100644
index 4444444..0000000
--- a/old.txt
+++ /dev/null
@@ -1,1 +0,0 @@
-gone
diff --git a/logo.png b/logo.png
index 5555555..6666666 100644
Binary files a/logo.png and b/logo.png differ
"""


def test_parse_multi_file_diff():
    patches = parse_unified_diff(MULTI_FILE_DIFF)
    assert [p.file_path for p in patches] == [
        "src/app.js",
        "src/new.py",
        "old.txt",
        "logo.png",
    ]

    app, new, old, logo = patches
    assert app.added_lines == frozenset({2, 3})
    assert app.deleted_lines == frozenset({2})
    assert (app.insertions, app.deletions) == (2, 1)
    assert app.diff_text.startswith("diff --git a/src/app.js")

    assert new.is_new_file
    assert new.added_lines == frozenset({1, 2})

    assert old.is_deleted
    assert old.file_path == "old.txt"
    assert old.insertions == 0

    assert logo.is_binary
    assert logo.added_lines == frozenset()


def test_parse_empty_diff():
    assert parse_unified_diff("") == []
    assert parse_unified_diff("   \n") == []


def test_parse_hunk_lines_multiple_hunks():
    body = """\
@@ -1,2 +1,2 @@
-x
+y
 z
@@ -10,2 +10,3 @@
 a
+b
 c
\\ No newline at end of file
"""
    added, deleted, insertions, deletions = parse_hunk_lines(body)
    assert added == {1, 11}
    assert deleted == {1}
    assert (insertions, deletions) == (2, 1)


def test_parse_hunk_lines_content_resembling_file_headers():
    # A removed "-- comment" and an added "++count;" look like ---/+++ headers
    body = """\
--- a/query.sql
+++ b/query.sql
@@ -1,3 +1,3 @@
--- header comment
+++count;
 select 1;
-x
+y
"""
    added, deleted, insertions, deletions = parse_hunk_lines(body)
    assert added == {1, 3}
    assert deleted == {1, 3}
    assert (insertions, deletions) == (2, 2)


def test_format_line_ranges():
    assert format_line_ranges({3, 4, 5, 9, 12, 13, 14}) == "3-5, 9, 12-14"
    assert format_line_ranges({7}) == "7"
    assert format_line_ranges(set()) == "(none)"
