(complete corrected content)"""


def build_work_prompt(job: TrackedJob, category: str) -> str:
    prompt = _BASE.format(
        title=job.title or "(untitled)",
        description=job.description or "(no description)",
    )
    prompt += "\n\n" + _CATEGORY_FILES.get(category, _GENERAL_FILES)
    if job.changes_feedback:
        prompt += "\n" + _FEEDBACK.format(feedback=job.changes_feedback.strip())
    return prompt


def build_fix_prompt(
    job: TrackedJob, *, stage: str, error_output: str, files: Mapping[str, str]
) -> str:
    return _FIX.format(
        title=job.title or "(untitled)",
        stage=stage,
        error=(error_output or "(no output)")[:MAX_ERROR_CHARS],
        files=serialize_files(files),
    )
