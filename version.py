"""Project version constants.

These constants are used in logs and in the CLI ``--version`` output so that
a pipeline run can be traced back to a specific engine version.
"""

ENGINE_NAME: str = "upsertpipe"
ENGINE_VERSION: str = "0.1.0"
