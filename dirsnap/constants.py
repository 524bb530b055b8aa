import struct


# ZIP record signatures (little endian u32)
SIG_LOCAL_HEADER = 0x04034B50
SIG_DATA_DESCRIPTOR = 0x08074B50
SIG_CENTRAL_HEADER = 0x02014B50
SIG_END_OF_CENTRAL_DIR = 0x06054B50
SIG_ZIP64_END_OF_CENTRAL_DIR = 0x06064B50
SIG_ZIP64_LOCATOR = 0x07064B50

LOCAL_HEADER_MAGIC = struct.pack("<I", SIG_LOCAL_HEADER)
CENTRAL_HEADER_MAGIC = struct.pack("<I", SIG_CENTRAL_HEADER)
EOCD_MAGIC = struct.pack("<I", SIG_END_OF_CENTRAL_DIR)

VALID_LEADING_SIGNATURES = (
    SIG_LOCAL_HEADER,
    SIG_DATA_DESCRIPTOR,
    SIG_CENTRAL_HEADER,
    SIG_END_OF_CENTRAL_DIR,
)

LOCAL_HEADER_SIZE = 30
CENTRAL_HEADER_SIZE = 46
EOCD_SIZE = 22
MAX_COMMENT_SIZE = 0xFFFF

# Field offsets inside records
LOCAL_VERSION_OFFSET = 4
LOCAL_CRC_OFFSET = 14
EOCD_CD_OFFSET_OFFSET = 16
EOCD_COMMENT_LEN_OFFSET = 20


# Archive layout
ARCHIVE_SUFFIX = ".zip"
TEMP_SUFFIX = ".tmp"
CHECKSUM_MANIFEST = ".checksums"
METADATA_DIR = ".metadata"
INCREMENTAL_MARKER = "_update="
NAME_SEPARATOR = "="

# Minute resolution in snapshot names
TIMESTAMP_FORMAT = "%Y-%m-%d-%H-%M"

DEFAULT_CHECKSUM_ALGORITHM = "sha256"
SUPPORTED_CHECKSUM_ALGORITHMS = (
    "sha256",
    "sha512",
    "sha384",
    "sha224",
    "sha1",
    "md5",
    "blake2b",
    "blake2s",
    "sha3_256",
    "sha3_512",
)

COPY_BUFFER_SIZE = 64 * 1024
COMPARE_BUFFER_SIZE = 4096

CORRUPTION_BACKUP_SUFFIX = ".corruption-backup"
