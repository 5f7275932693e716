"""Core infrastructure for IFS-SBC calibration runs."""

from ifs_sbc.core.errors import *
from ifs_sbc.core.utils import *
from ifs_sbc.core.infrastructure import *
from ifs_sbc.core.ranks import *
from ifs_sbc.core.oracle import *
from ifs_sbc.core.discrepancy import *
from ifs_sbc.core.validation import *
