"""
Enclave Bridge -- host/guest vsock bridge for network-isolated enclaves.

The enclave can only talk to its parent instance over a single vsock
channel. The bridge turns that channel into a set of supervised TCP
forwarders (egress to the internet, ingress to the enclave API) plus a
one-shot secret bootstrap channel used at boot.
"""

__version__ = "1.2.0"
__author__ = "Enclave Bridge Team"
