"""Clinical Import - multi-format clinical data import core.

Converts delimited text, generic JSON, HL7/CDA-flavored JSON and HTML survey
exports into validated patients, visits and observations.
"""

__version__ = "1.0.0"
