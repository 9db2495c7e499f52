"""Built-in capability bundles.

Each public module exposes a module-level ``plugin`` factory returning a
fresh Plugin. PackagePluginSource discovers them by package name.
"""
