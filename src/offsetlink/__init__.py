"""offsetlink — escrowed linkage of flights to reforestation projects.

Verifier consensus releases or refunds the escrow; verified linkages
may be disputed within a bounded window.
"""

from offsetlink.errors import LinkageError, ServiceResult
from offsetlink.service import LinkageService

__version__ = "0.1.0"

__all__ = ["LinkageError", "LinkageService", "ServiceResult", "__version__"]
