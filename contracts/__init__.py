"""Contracts shared by the writer pipeline.

The contracts package defines:
- the record/batch/policy value types passed between components
- the error taxonomy raised by the normalizer, compiler, executor and stages
- Protocol definitions for the store, logger and pipeline processors

Main exports:
- Record, Batch, UpsertMode, UpsertPolicy, RoutedBatch, CompiledStatement, ChunkResult
- UpsertPipeError and its subclasses
"""

from contracts import errors as errors_module
from contracts import records as records_module

# Explicit re-exports to satisfy ruff F401
__all__ = [
    "Batch",
    "ChunkResult",
    "CompileError",
    "CompiledStatement",
    "ConfigError",
    "MissingKeyError",
    "ParseError",
    "PipelineAbort",
    "Record",
    "RoutedBatch",
    "StoreError",
    "UpsertMode",
    "UpsertPipeError",
    "UpsertPolicy",
]

# Re-export for convenience
Batch = records_module.Batch
ChunkResult = records_module.ChunkResult
CompiledStatement = records_module.CompiledStatement
Record = records_module.Record
RoutedBatch = records_module.RoutedBatch
UpsertMode = records_module.UpsertMode
UpsertPolicy = records_module.UpsertPolicy

CompileError = errors_module.CompileError
ConfigError = errors_module.ConfigError
MissingKeyError = errors_module.MissingKeyError
ParseError = errors_module.ParseError
PipelineAbort = errors_module.PipelineAbort
StoreError = errors_module.StoreError
UpsertPipeError = errors_module.UpsertPipeError
