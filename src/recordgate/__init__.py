"""RecordGate - consent-gated disclosure of medical records.

Brokers access to sensitive patient records between a record-holding
organization and external requesting parties (insurers):
- Company/patient allocations approved by administrators
- Disclosure requests reviewed by a human approver
- Per-record grants bounded by expiry and access quota
- Field-level encryption of sensitive attributes at rest
- Append-only audit trail for every transition and sensitive read
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
