class LabEngineError(Exception):
    pass


class SchemaError(LabEngineError):
    pass


class ValidationError(LabEngineError):
    def __init__(self, field_key, message, row_id=None):
        super().__init__(message)
        self.field_key = field_key
        self.row_id = row_id
        self.message = message

    def as_dict(self):
        return {"row_id": self.row_id, "field": self.field_key, "message": self.message}


class EvalError(LabEngineError):
    code = "eval_error"


class UnknownReference(EvalError):
    code = "unknown_reference"

    def __init__(self, name):
        super().__init__(f"Unknown reference: {name}")
        self.name = name


class DivisionByZero(EvalError):
    code = "division_by_zero"


class Malformed(EvalError):
    code = "malformed"


class NonFiniteResult(EvalError):
    code = "non_finite"


class EmptyAggregate(EvalError):
    code = "empty_aggregate"


class InsufficientData(LabEngineError):
    code = "insufficient_data"


class NoBracket(LabEngineError):
    code = "no_bracket"


class UnknownFieldError(LabEngineError):
    pass


class UnknownRowError(LabEngineError):
    pass


class RowLimitError(LabEngineError):
    pass


class FinalizeError(LabEngineError):
    def __init__(self, message, issues=None):
        super().__init__(message)
        self.issues = list(issues or [])


class RecordLockedError(FinalizeError):
    pass
