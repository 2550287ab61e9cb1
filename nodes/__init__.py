# nodes/__init__.py
# This package contains the node factories and built-in node types.
# Submodules:
# - base/: Factories for metadata, parameters, ports, definitions and executables.
# - core/: Built-in nodes organized by domain (flow, io, data, media).
#
# Each node module exposes a `<name>_definition` and a `create_<name>_executable` factory;
# core.node_registry.build_default_registry wires them together.
