from .local_tree import TreeFile, list_directories, to_absolute, to_relative, walk_tree

__all__ = [
    "TreeFile",
    "list_directories",
    "to_absolute",
    "to_relative",
    "walk_tree",
]
