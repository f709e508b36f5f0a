# Configuration file for the Sphinx documentation builder.
#
# For the full list of built-in configuration values, see the documentation:
# https://www.sphinx-doc.org/en/master/usage/configuration.html

# -- Project information -----------------------------------------------------
# https://www.sphinx-doc.org/en/master/usage/configuration.html#project-information

# Tell sphinx where to find my package
import os
import sys
sys.path.insert(0, os.path.abspath("../../src"))

project = 'gmm-accstats'
copyright = '2025, gmm-accstats developers'
author = 'gmm-accstats developers'

# -- General configuration ---------------------------------------------------
# https://www.sphinx-doc.org/en/master/usage/configuration.html#general-configuration

extensions = [
    "numpydoc", # For NumPy style docstrings
    'sphinx_gallery.gen_gallery', # For generating example galleries
    "sphinx.ext.autodoc", # For automatic API documentation generation
    "sphinx.ext.intersphinx", # For linking to other projects' docs
        ]

templates_path = ['_templates']
exclude_patterns = []


# -- Intersphinx configuration -----------------------------------------------

intersphinx_mapping = {
    "numpy": ("https://numpy.org/doc/stable/", None),
    "torch": ("https://pytorch.org/docs/stable/", None),
}

# -- Options for HTML output -------------------------------------------------
# https://www.sphinx-doc.org/en/master/usage/configuration.html#options-for-html-output

html_theme = 'shibuya'
html_static_path = ['_static']

# Sphinx Gallery configuration ----------------------------------------------
sphinx_gallery_conf = {
    'examples_dirs': ['examples'],      # source examples
    'gallery_dirs': ['auto_examples'],  # generated gallery
    'filename_pattern': r'.*',          # include all example files
    'download_all_examples': False,
    'remove_config_comments': True,
    'backreferences_dir': 'gen_modules/backreferences',
    "doc_module": ("gmmacc",),
}

# NumPyDoc configuration -----------------------------------------------------
numpydoc_show_class_members = True # show table of methods inline
numpydoc_class_members_toctree = False # do NOT generate a toctree/stubs for methods
numpydoc_show_inherited_class_members = False

# autodoc configuration -------------------------------------------------------
autodoc_default_options = {
    "members": True,
    "undoc-members": False,
    "inherited-members": False,
    "show-inheritance": True,
}
