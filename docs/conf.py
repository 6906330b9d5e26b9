# Configuration file for the Sphinx documentation builder.
# https://www.sphinx-doc.org/en/master/usage/configuration.html

import sys
import tomllib
from pathlib import Path

# Add the project root to the path so Sphinx can find the app package
sys.path.insert(0, str(Path(__file__).parent.parent))

project = "APK Template Builder"
author = "APK Template Builder contributors"

_pyproject = Path(__file__).parent.parent / "pyproject.toml"
with open(_pyproject, "rb") as f:
    release = tomllib.load(f)["project"]["version"]
version = release

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.napoleon",  # NumPy-style Parameters / Raises sections
    "sphinx_autodoc_typehints",
    "myst_parser",  # index.md and api.md
]

source_suffix = {".md": "markdown"}
exclude_patterns = ["_build"]
master_doc = "index"

html_theme = "furo"

autodoc_default_options = {
    "members": True,
    "member-order": "bysource",
}
autodoc_typehints = "description"

napoleon_google_docstring = False
napoleon_numpy_docstring = True
