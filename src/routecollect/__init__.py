"""
routecollect - precisely timed, recurring routing-data collection.

- routecollect.core: errors, logging, settings
- routecollect.scheduling: the scheduler core
- routecollect.cli: the ``routecollect`` command
"""

__version__ = "0.1.0"
