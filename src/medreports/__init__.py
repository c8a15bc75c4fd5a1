"""medreports - reporting and export core for the corporate-agent booking portal."""

__version__ = "0.1.0"
