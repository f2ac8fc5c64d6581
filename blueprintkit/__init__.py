"""blueprintkit -- generate projects from declarative blueprints.

A blueprint is a directory holding a ``template.yaml`` manifest plus Jinja2
template files.  The engine validates user variables against the manifest,
selects files by condition, renders them, merges declared dependencies,
writes the project atomically and runs post-generation hooks.
"""

__version__ = "0.1.0"
