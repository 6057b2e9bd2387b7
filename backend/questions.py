"""Draft question records.

A question is either a single-choice or a multiple-choice record; the
``type`` field selects the variant and each variant carries only the
correctness field that fits it.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from db.models import DraftQuestion


class _QuestionBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    question: str = Field(min_length=1)
    options: list[str] = Field(min_length=2)
    explanation: Optional[str] = None
    question_image: Optional[str] = Field(default=None, alias="questionImage")
    option_images: Optional[list[Optional[str]]] = Field(default=None, alias="optionImages")

    @field_validator("options")
    @classmethod
    def _options_not_blank(cls, options: list[str]) -> list[str]:
        if any(not option for option in options):
            raise ValueError("options must not be empty")
        return options

    @model_validator(mode="after")
    def _option_images_match_options(self):
        if self.option_images is not None and len(self.option_images) != len(self.options):
            raise ValueError("optionImages must have one entry per option")
        return self


class SingleChoiceQuestion(_QuestionBase):
    type: Literal["single"] = "single"
    correct_index: int = Field(alias="correctIndex")

    @model_validator(mode="after")
    def _correct_index_in_range(self):
        if not 0 <= self.correct_index < len(self.options):
            raise ValueError("correctIndex is out of range")
        return self


class MultipleChoiceQuestion(_QuestionBase):
    type: Literal["multiple"] = "multiple"
    correct_indexes: list[int] = Field(alias="correctIndexes", min_length=1)

    @model_validator(mode="after")
    def _correct_indexes_in_range(self):
        if any(not 0 <= idx < len(self.options) for idx in self.correct_indexes):
            raise ValueError("correctIndexes contains an out-of-range index")
        self.correct_indexes = sorted(set(self.correct_indexes))
        return self


Question = Annotated[
    Union[SingleChoiceQuestion, MultipleChoiceQuestion],
    Field(discriminator="type"),
]

_question_adapter = TypeAdapter(Question)


def parse_question(data: Any) -> Question:
    return _question_adapter.validate_python(data)


def question_to_dict(question: Question) -> dict[str, Any]:
    return question.model_dump(by_alias=True, exclude_none=True)


def question_to_row(question: Question) -> dict[str, Any]:
    row: dict[str, Any] = {
        "question_type": question.type,
        "question_text": question.question,
        "options": list(question.options),
        "correct_index": None,
        "correct_indexes": None,
        "explanation": question.explanation,
        "question_image": question.question_image,
        "option_images": question.option_images,
    }
    if isinstance(question, SingleChoiceQuestion):
        row["correct_index"] = question.correct_index
    else:
        row["correct_indexes"] = list(question.correct_indexes)
    return row


def question_from_row(row: DraftQuestion) -> Question:
    data: dict[str, Any] = {
        "type": row.question_type,
        "question": row.question_text,
        "options": list(row.options or []),
        "explanation": row.explanation,
        "questionImage": row.question_image,
        "optionImages": row.option_images,
    }
    if row.question_type == "single":
        data["correctIndex"] = row.correct_index
    else:
        data["correctIndexes"] = list(row.correct_indexes or [])
    return parse_question(data)
