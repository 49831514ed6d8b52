"""
Test suite for GaussFit package.

This module contains unit tests and integration tests for the
gaussfit package.
"""

import sys
from pathlib import Path

# Add parent directory to path for imports
parent_dir = Path(__file__).parent.parent
sys.path.insert(0, str(parent_dir))
