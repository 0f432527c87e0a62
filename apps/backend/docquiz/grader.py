from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Sequence

from .schemas import AnswerIn, GradedAnswer, QuizResult


def score_pct(correct: int, total: int) -> int:
    if total == 0:
        return 0
    # half rounds up (83.5 -> 84), independent of float banker's rounding
    return int((Decimal(correct * 100) / Decimal(total)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def grade(quiz_id: str, questions: Sequence, answers: Sequence[AnswerIn],
          attempt_id: Optional[str] = None) -> QuizResult:
    """Grade every question of the quiz, answered or not.

    `questions` are objects with `id` and `correct`. A skipped question or a
    choice that matches no option is simply incorrect.
    """
    chosen = {a.question_id: a.chosen_option_id for a in answers}
    graded = []
    for q in questions:
        qid = str(q.id)
        choice = chosen.get(qid)
        graded.append(GradedAnswer(
            question_id=qid,
            chosen_option_id=choice,
            is_correct=choice is not None and choice == q.correct,
        ))
    correct = sum(1 for g in graded if g.is_correct)
    return QuizResult(
        quiz_id=str(quiz_id),
        total=len(graded),
        correct_count=correct,
        score=score_pct(correct, len(graded)),
        answers=graded,
        attempt_id=attempt_id,
    )
