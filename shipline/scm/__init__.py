"""Source control operations (GitPython)."""

from shipline.scm.checkout import SourceCheckout

__all__ = ["SourceCheckout"]
