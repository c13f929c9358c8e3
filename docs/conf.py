import os
import sys
from importlib.metadata import PackageNotFoundError, version

sys.path.insert(0, os.path.abspath(".."))

project   = "optstrata"
author    = "optstrata developers"
copyright = f"2026, {author}"

try:
    release = version("optstrata")
except PackageNotFoundError:
    release = "0.1.0"

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.napoleon",
    "sphinx.ext.intersphinx",
    "sphinx.ext.mathjax",        # balance statistic and flow formulation
    "sphinx_autodoc_typehints",
    "sphinx_copybutton",
]

html_theme = "sphinx_rtd_theme"

# The exception hierarchy is part of the API; show the bases.
autodoc_default_options = {
    "members": True,
    "show-inheritance": True,
}
autodoc_member_order = "groupwise"
autodoc_typehints    = "description"

# Docstrings use NumPy-style Parameters / Raises sections only.
napoleon_numpy_docstring  = True
napoleon_google_docstring = False

intersphinx_mapping = {
    "numpy":       ("https://numpy.org/doc/stable/", None),
    "pandas":      ("https://pandas.pydata.org/docs/", None),
    "scipy":       ("https://docs.scipy.org/doc/scipy/", None),
    "statsmodels": ("https://www.statsmodels.org/stable/", None),
}

copybutton_prompt_text = ">>> "
