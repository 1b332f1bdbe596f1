"""
Protocol adapters.

One module per field protocol, all built on
:class:`~gateway.src.adapters.base.DeviceAdapter`. Each module also defines
its connection descriptor and the transport protocol its adapter drives.

CHANGELOG:
- 2026-02-27: Initial creation

TODO:
- None
"""
