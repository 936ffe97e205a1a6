"""
Fiber Devnet - local test-network bootstrapper for a Fiber payment-channel
network running on a CKB dev chain.
"""

__version__ = "0.3.0"
