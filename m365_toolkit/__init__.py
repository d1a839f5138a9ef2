"""
M365 Graph Toolkit
==================
Microsoft Graph reporting functions for directory roles, PIM history,
application credentials, Defender, Teams, terms of use and usage reports.

Every operation fetches fresh data per call and returns flat records that
can be exported as JSON, CSV or a self-contained HTML report.

WARNING: Only the credential management operations write to the tenant,
         and only through the allow-listed endpoints in safety.guardian.
"""

__version__ = "1.0.0"
__author__ = "M365 Graph Toolkit"
