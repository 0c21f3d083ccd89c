"""
Worker Manager - Exception types.

Copyright (C) 2025 Andreas Vogler

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.
"""


class ManagerError(Exception):
    """Base class for all errors raised by the worker manager."""


class ValidationError(ManagerError):
    """A name, path, file name or environment entry was rejected."""


class NotFoundError(ManagerError):
    """An identity or result file is unknown."""


class ProcessLimitError(ManagerError):
    """The configured maximum number of processes is already registered."""


class SupervisorError(ManagerError):
    """The supervisor reported a failure for a lifecycle call."""


class FilesystemError(ManagerError):
    """Reading, writing or deleting a result file failed."""


class ArchiveError(ManagerError):
    """Building a zip archive failed."""


class NoFilesError(ArchiveError):
    """There are no result files to put into an archive."""
