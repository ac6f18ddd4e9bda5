# Trial fields
FIELD_NCT_ID = "nct_id"
FIELD_BRIEF_TITLE = "brief_title"
FIELD_DETAILED_DESCRIPTION = "detailed_description"
FIELD_CRITERIA = "criteria"
FIELD_GENDER = "gender"
FIELD_MIN_AGE = "minimum_age"
FIELD_MAX_AGE = "maximum_age"
FIELD_EMBEDDING = "embedding"

# Topic fields
FIELD_TOPIC_NUMBER = "number"
FIELD_TOPIC_QUERY = "query"
FIELD_TOPIC_AGE = "age"
FIELD_TOPIC_GENDER = "gender"

# Search result columns
FIELD_LEXICAL_SCORE = "lexical_score"
FIELD_DISTANCE = "distance"
