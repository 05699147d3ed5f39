"""Shared constants for migration jobs."""

ID_FIELD_NAME = "Id"
INTERNAL_ID_FIELD_NAME = "___Id"
SOURCE_ID_FIELD_NAME = "___SourceId"
IS_PROCESSED_FIELD_NAME = "___IsProcessed"
ERRORS_FIELD_NAME = "Errors"
OLD_ID_FIELD_NAME = "Old Id"

SYSTEM_FIELD_NAMES = [INTERNAL_ID_FIELD_NAME, SOURCE_ID_FIELD_NAME, IS_PROCESSED_FIELD_NAME]

COMPLEX_FIELDS_SEPARATOR = ";"

RECORD_TYPE_OBJECT_NAME = "RecordType"
USER_OBJECT_NAME = "User"
GROUP_OBJECT_NAME = "Group"
ACCOUNT_OBJECT_NAME = "Account"
CONTACT_OBJECT_NAME = "Contact"
DEFAULT_EXTERNAL_ID_FIELD_NAME = "Name"
DEFAULT_EXTERNAL_IDS = {
    "EmailMessage": "Subject",
    RECORD_TYPE_OBJECT_NAME: "DeveloperName;NamespacePrefix;SobjectType",
}

SPECIAL_OBJECTS = [GROUP_OBJECT_NAME, USER_OBJECT_NAME, RECORD_TYPE_OBJECT_NAME]
SPECIAL_OBJECT_QUERY_ORDER = {
    "AccountContactRelation": ["Account", "Contact", "Case"],
}
SPECIAL_OBJECT_UPDATE_ORDER = {
    "ProductAttributeSetProduct": ["ProductAttribute"],
}
SPECIAL_OBJECT_DELETE_ORDER = {
    "ProductAttribute": ["ProductAttributeSetProduct"],
}

# Person accounts
IS_PERSON_ACCOUNT_FIELD_NAME = "IsPersonAccount"
FIELDS_TO_EXCLUDE_FROM_UPDATE_FOR_BUSINESS_ACCOUNT = [
    "FirstName", "LastName", "IsPersonAccount", "Salutation", "MiddleName", "Suffix",
]
FIELDS_TO_EXCLUDE_FROM_UPDATE_FOR_BUSINESS_CONTACT = ["IsPersonAccount", "Name"]
FIELDS_TO_EXCLUDE_FROM_UPDATE_FOR_PERSON_ACCOUNT = ["IsPersonAccount", "Name"]

# Query limits
MAX_QUERY_CHARACTER_LENGTH = 3900

# API engines
DEFAULT_API_VERSION = "59.0"
DEFAULT_BULK_API_VERSION = "2.0"
DEFAULT_BULK_API_THRESHOLD_RECORDS = 200
DEFAULT_BULK_API_V1_BATCH_SIZE = 9500
DEFAULT_REST_API_BATCH_SIZE = 200
DEFAULT_POLLING_INTERVAL_MS = 5000
DEFAULT_POLLING_TIMEOUT_MS = 3000000
BULK_API_V2_MAX_CSV_SIZE_IN_BYTES = 145000000
REST_API_JOB_ID = "REST"
NOT_SUPPORTED_OBJECTS_IN_BULK_API = ["Attachment", "ContentVersion"]
NULL_VALUE_MARKER = "#N/A"

# Files
SCRIPT_FILE_NAME = "export.json"
CSV_FILE_ORG_NAME = "csvfile"
CSV_TARGET_SUB_DIRECTORY = "target"
CSV_TARGET_FILE_SUFFIX = "_target"
CSV_TARGET_FILE_PERSON_ACCOUNTS_SUFFIX = "_person"
VALUE_MAPPING_CSV_FILENAME = "ValueMapping.csv"
MISSING_PARENT_LOOKUP_RECORDS_ERRORS_FILENAME = "MissingParentRecordsReport.csv"

# Masking
MOCK_PATTERN_ENTIRE_ROW_FLAG = "--row"
MOCK_ALL_FIELDS_PATTERN = "all"
MOCK_EXPRESSION_ORIGINAL_VALUE = "RAW_VALUE"

# Value mapping
FIELDS_MAPPING_REGEX_PATTERN = r"^/(.*)/$"
FIELDS_MAPPING_EVAL_PATTERN = r"^eval[(](.*)[)]$"
FIELD_MAPPING_EVAL_PATTERN_ORIGINAL_VALUE = "RAW_VALUE"

# Retrieval and update passes
MODE_FORWARDS = "forwards"
MODE_BACKWARDS = "backwards"
MODE_TARGET = "target"
