import pytest

from services.tutor.prompts import (
    GenerationContext,
    build_flashcard_prompt,
    build_pills_prompt,
    build_quiz_prompt,
    build_summary_interactive_prompt,
    build_summary_prose_prompt,
    build_tutor_system_prompt,
    infer_academic_level,
    study_tool_user_message,
    summary_transcript_messages,
)


@pytest.mark.parametrize(
    "year,course,label",
    [
        ("PhD candidate", None, "graduate"),
        ("4th year", None, "senior undergraduate"),
        ("Year 3", None, "junior undergraduate"),
        ("second year", "Advanced Optics", "sophomore"),
        ("1st", None, "freshman"),
        (None, "Intro to Biology", "introductory"),
        ("", "Advanced Quantum Field Theory", "advanced"),
        (None, "Organic Chemistry", "undergraduate"),
    ],
)
def test_infer_academic_level(year, course, label) -> None:
    assert infer_academic_level(year, course).label == label


def test_tutor_prompt_reflects_depth_goal_and_focus() -> None:
    ctx = GenerationContext(
        course_name="Physics 201",
        topic_name="Waves",
        chapter_name="Standing waves",
        depth=5,
        goal="exam_prep",
        year_of_study="2nd year",
        exam_name="Midterm 2",
    )
    prompt = build_tutor_system_prompt(ctx)
    assert "Current focus: Waves > Standing waves." in prompt
    assert "sophomore" in prompt
    assert "Midterm 2" in prompt
    assert "maximum depth" in prompt


def test_tutor_prompt_for_classwork_at_out_of_range_depth() -> None:
    prompt = build_tutor_system_prompt(GenerationContext(course_name="Biology", topic_name="Cells", depth=9))
    assert "ongoing classwork" in prompt
    assert "maximum depth" in prompt
    assert "exam" not in prompt.lower().split("goal:")[1].split("\n")[0]


def test_summary_prompts_name_topic_and_chapter() -> None:
    ctx = GenerationContext(course_name="Chem", topic_name="Acids", chapter_name="Buffers", depth=1)
    prose = build_summary_prose_prompt(ctx)
    assert '"Acids" > "Buffers"' in prose
    assert "concise orientation summary" in prose
    assert "No JSON" in prose
    interactive = build_summary_interactive_prompt(ctx)
    assert '"correctIndex"' in interactive
    assert "Buffers" in interactive


def test_pills_prompt_truncates_long_responses() -> None:
    prompt = build_pills_prompt("x" * 5000, "Entropy", "freshman")
    assert "x" * 2000 in prompt
    assert "x" * 2001 not in prompt
    assert '"followupPills"' in prompt


def test_summary_transcript_messages() -> None:
    messages = summary_transcript_messages("Student: hi\n\nTutor: hello")
    assert [m["role"] for m in messages] == ["system", "user"]
    assert messages[1]["content"] == "Student: hi\n\nTutor: hello"


def test_study_tool_prompts() -> None:
    assert '"correctIndex"' in build_quiz_prompt("Entropy")
    assert "do NOT duplicate" not in build_flashcard_prompt("Entropy")
    dedup = build_flashcard_prompt("Entropy > Second Law", ["Entropy", "  "])
    assert "do NOT duplicate" in dedup
    assert dedup.count("\n- ") == 1
    message = study_tool_user_message("Entropy", ["Student: hi", "Tutor: hello"], "Generate flashcards.")
    assert message == 'Topic: "Entropy"\n\nRecent conversation context:\nStudent: hi\nTutor: hello\n\nGenerate flashcards.'
