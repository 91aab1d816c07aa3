"""Pipeline components.

This package contains the record normalizer, column resolver, statement
compiler, batch executor, store adapters, the threaded runtime and the
reader/writer stages built on them.
"""
