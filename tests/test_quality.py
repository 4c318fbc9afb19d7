"""Quality assurance tests for code standards and best practices."""

import ast
import re
from pathlib import Path

import pytest


class TestCodeQuality:
    """Test code quality standards."""

    def setup_method(self):
        """Set up test fixtures."""
        self.project_root = Path(__file__).parent.parent
        self.src_dir = self.project_root / "src"
        self.python_files = list(self.src_dir.rglob("*.py"))

    def _trees(self):
        for py_file in self.python_files:
            with open(py_file, 'r', encoding='utf-8') as f:
                yield py_file, ast.parse(f.read())

    def test_python_files_exist(self):
        """Test that Python source files exist."""
        assert len(self.python_files) > 0, "No Python files found in src directory"

    def test_no_syntax_errors(self):
        """Test that all Python files have valid syntax."""
        for py_file in self.python_files:
            with open(py_file, 'r', encoding='utf-8') as f:
                content = f.read()

            try:
                ast.parse(content)
            except SyntaxError as e:
                pytest.fail(f"Syntax error in {py_file}: {e}")

    def test_public_modules_have_docstrings(self):
        """Every module opens with a docstring."""
        for py_file, tree in self._trees():
            if not ast.get_docstring(tree):
                pytest.fail(f"Missing module docstring in {py_file}")

    def test_no_hardcoded_secrets(self):
        """Test that no hardcoded secrets are present."""
        secret_patterns = [
            r'password\s*=\s*["\'][^"\']+["\']',
            r'passphrase\s*=\s*["\'][^"\']+["\']',
            r'secret\s*=\s*["\'][^"\']+["\']',
            r'token\s*=\s*["\'][^"\']+["\']',
            r'private_key\s*=\s*["\'][^"\']+["\']',
        ]

        for py_file in self.python_files:
            with open(py_file, 'r', encoding='utf-8') as f:
                content = f.read()

            for pattern in secret_patterns:
                match = re.search(pattern, content, re.IGNORECASE)
                if match:
                    pytest.fail(f"Potential hardcoded secret in {py_file}: {match.group()}")

    def test_no_debug_statements(self):
        """Test that no debug statements are left in code."""
        debug_patterns = [
            r'\bprint\s*\(',
            r'\bpdb\.set_trace\s*\(',
            r'\bbreakpoint\s*\(',
        ]

        for py_file in self.python_files:
            with open(py_file, 'r', encoding='utf-8') as f:
                content = f.read()

            for pattern in debug_patterns:
                for match in re.finditer(pattern, content):
                    line_no = content[:match.start()].count('\n') + 1
                    pytest.fail(f"Debug statement found in {py_file}:{line_no}: {match.group()}")

    def test_consistent_naming_conventions(self):
        """Test consistent naming conventions."""
        for py_file, tree in self._trees():
            for node in ast.walk(tree):
                if isinstance(node, ast.ClassDef):
                    if not re.match(r'^_?[A-Z][a-zA-Z0-9]*$', node.name):
                        pytest.fail(f"Class '{node.name}' should use PascalCase in {py_file}:{node.lineno}")
                elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                    if not re.match(r'^[a-z_][a-z0-9_]*$', node.name):
                        pytest.fail(f"Function '{node.name}' should use snake_case in {py_file}:{node.lineno}")


class TestErrorHandling:
    """Test error handling patterns."""

    def setup_method(self):
        """Set up test fixtures."""
        self.src_dir = Path(__file__).parent.parent / "src"
        self.python_files = list(self.src_dir.rglob("*.py"))

    def test_no_bare_except(self):
        """Bare except clauses hide failures."""
        for py_file in self.python_files:
            with open(py_file, 'r', encoding='utf-8') as f:
                tree = ast.parse(f.read())

            for node in ast.walk(tree):
                if isinstance(node, ast.ExceptHandler) and node.type is None:
                    pytest.fail(f"Bare except clause found in {py_file}:{node.lineno}")

    def test_custom_exceptions_documented(self):
        """Test that custom exceptions are properly defined."""
        exception_bases = {"Exception", "ChangeSyncError", "KeyError"}

        for py_file in self.python_files:
            with open(py_file, 'r', encoding='utf-8') as f:
                tree = ast.parse(f.read())

            for node in ast.walk(tree):
                if isinstance(node, ast.ClassDef):
                    bases = {base.id for base in node.bases if isinstance(base, ast.Name)}
                    if bases & exception_bases and not ast.get_docstring(node):
                        pytest.fail(f"Custom exception '{node.name}' missing docstring in {py_file}:{node.lineno}")


class TestTestCoverage:
    """Test test coverage and quality."""

    def setup_method(self):
        """Set up test fixtures."""
        self.project_root = Path(__file__).parent.parent
        self.tests_dir = self.project_root / "tests"

    def test_major_modules_have_tests(self):
        """Major modules have a corresponding test file."""
        test_files = {p.name for p in self.tests_dir.glob("test_*.py")}

        expected = [
            "test_database.py",
            "test_change_capture.py",
            "test_change_outbox.py",
            "test_sync_cursors.py",
            "test_apply_engine.py",
            "test_configuration.py",
        ]
        for name in expected:
            assert name in test_files, f"Missing test file: {name}"

    def test_test_file_structure(self):
        """Test files contain test functions."""
        for test_file in self.tests_dir.glob("test_*.py"):
            with open(test_file, 'r', encoding='utf-8') as f:
                content = f.read()

            if 'def test_' not in content:
                pytest.fail(f"Test file {test_file} should have test functions")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
