import sys
from typing import Dict, List, Union

if sys.version_info >= (3, 11):
    from typing import NotRequired, TypedDict
else:
    from typing_extensions import NotRequired, TypedDict

### Types for the JSON policy document

StringOrList = Union[str, List[str]]

ConditionValues = Union[str, bool, List[Union[str, bool]]]

# operator -> condition key -> value pattern(s)
ConditionBlock = Dict[str, Dict[str, ConditionValues]]

# "*" or {"AWS": ..., "Service": ...}
PrincipalType = Union[str, Dict[str, StringOrList]]


class StatementDocType(TypedDict):
    Sid: NotRequired[str]
    Effect: str
    Principal: NotRequired[PrincipalType]
    Action: StringOrList
    Resource: StringOrList
    Condition: NotRequired[ConditionBlock]


class PolicyDocType(TypedDict):
    Version: str
    Id: NotRequired[str]
    Statement: Union[StatementDocType, List[StatementDocType]]
