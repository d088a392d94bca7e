"""
Constants shared across the slscan pipeline.
"""

# ==================== DECODE CONSTANTS ====================
# Minimum (max - min) intensity spread for a pixel to be trusted
DEFAULT_SHADOW_THRESHOLD = 25
# Expected minimum global-light attenuation ratio
DEFAULT_ROBUST_B = 0.5
# Minimum direct-light magnitude to trust a pixel
DEFAULT_ROBUST_M = 5

# Direct light is estimated from a handful of high frequency pattern pairs
MAX_DIRECT_LIGHT_IMAGES = 10
DIRECT_LIGHT_COUNT = 4
DIRECT_LIGHT_OFFSET = 4

# ==================== PROJECTOR CONSTANTS ====================
# Defaults compatible with scans that have no projector info file
DEFAULT_PROJECTOR_WIDTH = 1024
DEFAULT_PROJECTOR_HEIGHT = 768
DEFAULT_PATTERN_COUNT = 10
PROJECTOR_INFO_FILENAME = "projector_info.txt"

# ==================== CALIBRATION CONSTANTS ====================
# Interior corners (columns, rows)
DEFAULT_CHESSBOARD_SIZE = (7, 11)
# Physical corner spacing (width, height) in mm
DEFAULT_CHESSBOARD_SPACING = (21.08, 21.00)
DEFAULT_HOMOGRAPHY_WINDOW = 60
MIN_CALIBRATION_SETS = 3
# Corner detection runs on a downscaled copy above this width
DETECTION_MAX_WIDTH = 1024
SUBPIX_WINDOW = (11, 11)

CALIBRATION_FILENAME = "calibration.yml"
CALIBRATION_MATLAB_FILENAME = "calibration.m"
WORLD_CORNERS_FILENAME = "model.txt"

# ==================== RECONSTRUCTION CONSTANTS ====================
# Maximum ray-ray distance accepted for a triangulated point (mm)
DEFAULT_MAX_RESIDUAL = 100.0
# Relative determinant below which two rays are considered parallel
DEGENERATE_RAY_EPS = 1e-12
RECONSTRUCTION_MODES = ("patch_center", "simple")
# Rows swept between cancellation checks
ROW_BLOCK = 64
# Rays triangulated per batch
TRIANGULATION_CHUNK = 200000

# ==================== FILE FORMAT CONSTANTS ====================
SUPPORTED_IMAGE_FORMATS = ['.jpg', '.bmp', '.png']
FILESTORAGE_FORMATS = ['.yml', '.yaml', '.xml', '.json']

# ==================== LOGGING CONSTANTS ====================
MAX_LOG_FILE_SIZE = 10 * 1024 * 1024  # 10 MB
DEBUG_DIR_PREFIX = 'slscan_debug'
