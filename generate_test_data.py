import requests
import time
import random

BASE_URL = "http://127.0.0.1:8000"

OPERATIONS = ["addition", "subtraction", "multiplication", "division"]

# Probability of answering correctly, per simulated learner
USERS = {
    "alice": 0.95,
    "peter": 0.75,
    "marco": 0.4,
}

def test_connection():
    try:
        r = requests.get(BASE_URL)
        print(f"Server status: {r.status_code}")
        return r.status_code == 200
    except requests.RequestException as e:
        print(f"Server connection error: {e}")
        return False

def answer_question(question, accuracy):
    """Pick the right option with probability ``accuracy``, else a distractor."""
    if random.random() < accuracy:
        return question["answer"]
    wrong = [option for option in question["options"] if option != question["answer"]]
    return random.choice(wrong)

def build_answers(questions, accuracy):
    return [
        {
            "fact_type": q.get("fact_type"),
            "operand1": q["operand1"],
            "operand2": q["operand2"],
            "response": answer_question(q, accuracy),
            "question_id": q["id"],
        }
        for q in questions
    ]

def run_assessment(user_id, operation, accuracy):
    r = requests.get(f"{BASE_URL}/facts/assessment", params={"user_id": user_id, "operation": operation})
    if not r.ok:
        print(f" → Assessment fetch error: {r.status_code}")
        return
    questions = r.json()["questions"]
    resp = requests.post(f"{BASE_URL}/facts/assessment", json={
        "user_id": user_id,
        "operation": operation,
        "answers": build_answers(questions, accuracy),
    })
    if resp.ok:
        summary = resp.json()
        print(f" → Assessment {summary['questions_correct']}/{summary['questions_total']}, "
              f"mastered {len(summary['newly_mastered'])} stages, mastery={summary['mastery_level']}")
    else:
        print(f" → Assessment submit error: {resp.status_code} {resp.text[:200]}")

def simulate_practice(user_id, operation, accuracy, questions_per_session):
    questions = []
    for _ in range(questions_per_session):
        r = requests.get(f"{BASE_URL}/facts/next", params={"user_id": user_id, "operation": operation})
        if not r.ok:
            print(f" → Question error: {r.status_code}")
            return False
        questions.append(r.json())

    duration = random.choice([45, 60, 90])
    resp = requests.post(f"{BASE_URL}/facts/practice", json={
        "user_id": user_id,
        "operation": operation,
        "answers": build_answers(questions, accuracy),
        "duration_seconds": duration,
    })
    if not resp.ok:
        print(f" → Practice error: {resp.status_code} {resp.text[:200]}")
        return False
    summary = resp.json()
    line = (f" → {summary['questions_correct']}/{summary['questions_total']} in {duration}s, "
            f"{summary['tokens_earned']} tokens, next stage: {summary['next_stage']}")
    if summary["level_changed"]:
        line += f", grade now {summary['new_grade']}"
    print(line)
    return True

def run_tests():
    if not test_connection():
        return

    total_sessions = 0
    sessions_per_operation = 5

    for user, accuracy in USERS.items():
        for operation in OPERATIONS:
            print(f"\nSimulating {user} (accuracy {accuracy:.0%}) on {operation}")
            run_assessment(user, operation, accuracy)
            for _ in range(sessions_per_operation):
                if simulate_practice(user, operation, accuracy, questions_per_session=20):
                    total_sessions += 1
                time.sleep(0.1)
            requests.post(f"{BASE_URL}/facts/session/reset", json={"user_id": user, "operation": operation})

    print(f"\nTotal practice sessions credited: {total_sessions}")

    for user in USERS:
        r = requests.get(f"{BASE_URL}/subjects/mastery", params={"user_id": user})
        if r.ok:
            rows = r.json()
            print(f"{user}: " + ", ".join(f"{row['subject']}@{row['grade']}={row['mastery_level']}%" for row in rows))
        else:
            print(f"Failed to get subject mastery for {user}")

if __name__ == "__main__":
    run_tests()
