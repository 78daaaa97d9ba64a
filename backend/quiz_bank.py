import random
from typing import Dict, List, Optional

from errors import InputValidationError
from models import QuizQuestion

DEFAULT_QUIZ_SIZE = 5
MAX_QUIZ_SIZE = 20


def _q(question: str, options: List[str], correct: int, difficulty: str, topic: str) -> QuizQuestion:
    return QuizQuestion(question=question, options=options, correct=correct, difficulty=difficulty, topic=topic)


QUESTION_BANK: Dict[str, List[QuizQuestion]] = {
    "mathematics": [
        _q("Solve for x: 2x + 5 = 13", ["x = 3", "x = 4", "x = 5", "x = 6"], 1, "easy", "Linear Equations"),
        _q(
            "Find the area of a circle with radius 7cm (π = 22/7)",
            ["154 cm²", "144 cm²", "164 cm²", "174 cm²"],
            0,
            "medium",
            "Geometry",
        ),
        _q("Factorise completely: x² - 9", ["(x - 3)²", "(x + 3)(x - 3)", "(x + 9)(x - 1)", "x(x - 9)"], 1, "medium", "Algebra"),
        _q("What is the gradient of the line y = 3x - 7?", ["-7", "3", "7", "-3"], 1, "easy", "Coordinate Geometry"),
        _q("Evaluate log₁₀ 1000", ["2", "3", "10", "100"], 1, "hard", "Logarithms"),
    ],
    "english": [
        _q("Choose the correct form: 'She _____ to school every day.'", ["go", "goes", "going", "gone"], 1, "easy", "Grammar"),
        _q("Which word is a synonym of 'abundant'?", ["scarce", "plentiful", "narrow", "hostile"], 1, "medium", "Vocabulary"),
        _q(
            "Identify the figure of speech: 'The wind whispered through the trees.'",
            ["Simile", "Personification", "Hyperbole", "Alliteration"],
            1,
            "medium",
            "Literary Devices",
        ),
    ],
    "kiswahili": [
        _q("Wingi wa neno 'kitabu' ni upi?", ["vitabu", "kitabu", "mitabu", "matabu"], 0, "easy", "Sarufi"),
        _q(
            "Kinyume cha neno 'kubwa' ni kipi?",
            ["refu", "ndogo", "pana", "nzito"],
            1,
            "easy",
            "Msamiati",
        ),
        _q(
            "Methali 'Haraka haraka haina ...' inakamilishwa na:",
            ["baraka", "mwisho", "faida", "raha"],
            0,
            "medium",
            "Fasihi Simulizi",
        ),
    ],
    "biology": [
        _q(
            "Which organelle is known as the 'powerhouse of the cell'?",
            ["Nucleus", "Mitochondria", "Ribosome", "Chloroplast"],
            1,
            "medium",
            "Cell Biology",
        ),
        _q(
            "Which blood vessels carry blood away from the heart?",
            ["Veins", "Capillaries", "Arteries", "Venules"],
            2,
            "easy",
            "Transport in Animals",
        ),
        _q(
            "The process by which green plants make food is called:",
            ["Respiration", "Photosynthesis", "Transpiration", "Osmosis"],
            1,
            "easy",
            "Nutrition in Plants",
        ),
    ],
    "chemistry": [
        _q("What is the chemical formula for water?", ["H2O", "CO2", "NaCl", "CH4"], 0, "easy", "Chemical Formulas"),
        _q(
            "What is the pH of a neutral solution at 25°C?",
            ["0", "7", "10", "14"],
            1,
            "easy",
            "Acids, Bases and Salts",
        ),
        _q(
            "How many moles are in 44 g of carbon dioxide (C = 12, O = 16)?",
            ["0.5", "1", "2", "44"],
            1,
            "medium",
            "The Mole",
        ),
    ],
    "physics": [
        _q("What is the SI unit of force?", ["Joule", "Newton", "Watt", "Pascal"], 1, "easy", "Measurement"),
        _q(
            "A car travels 100 m in 20 s. What is its average speed?",
            ["2 m/s", "5 m/s", "20 m/s", "2000 m/s"],
            1,
            "easy",
            "Linear Motion",
        ),
        _q(
            "Which of these is a vector quantity?",
            ["Mass", "Speed", "Velocity", "Temperature"],
            2,
            "medium",
            "Measurement",
        ),
    ],
    "history": [
        _q("In which year did Kenya gain independence?", ["1960", "1963", "1964", "1957"], 1, "easy", "Kenyan Independence"),
        _q(
            "Who was the first President of the Republic of Kenya?",
            ["Daniel arap Moi", "Jomo Kenyatta", "Mwai Kibaki", "Tom Mboya"],
            1,
            "easy",
            "Kenyan Independence",
        ),
        _q(
            "The Mau Mau uprising was mainly a struggle over:",
            ["Trade routes", "Land and freedom", "Religion", "Taxation of imports"],
            1,
            "medium",
            "Colonial Rule",
        ),
    ],
    "geography": [
        _q("Which is the highest mountain in Kenya?", ["Mt. Elgon", "Mt. Kenya", "Mt. Longonot", "Mt. Kilimanjaro"], 1, "easy", "Physical Geography"),
        _q(
            "The Great Rift Valley was formed mainly by:",
            ["Glaciation", "Faulting", "Wind erosion", "Deposition"],
            1,
            "medium",
            "Internal Land Forming Processes",
        ),
        _q(
            "Which line of latitude passes through Kenya?",
            ["Tropic of Cancer", "Equator", "Tropic of Capricorn", "Arctic Circle"],
            1,
            "easy",
            "Maps and Location",
        ),
    ],
    "cre": [
        _q("Who led the Israelites out of Egypt?", ["Abraham", "Moses", "Joshua", "David"], 1, "easy", "Old Testament"),
        _q(
            "How many disciples did Jesus choose?",
            ["7", "10", "12", "40"],
            2,
            "easy",
            "Life of Jesus",
        ),
        _q(
            "The covenant between God and Abraham was sealed through:",
            ["Baptism", "Circumcision", "Passover", "Fasting"],
            1,
            "medium",
            "Old Testament",
        ),
    ],
}


def placeholder_question(subject: str, topic: Optional[str] = None, difficulty: Optional[str] = None) -> QuizQuestion:
    return QuizQuestion(
        question=f"Sample {subject} question about {topic or 'general concepts'}",
        options=["Option A", "Option B", "Option C", "Option D"],
        correct=0,
        difficulty=difficulty or "medium",
        topic=topic or "General",
    )


def select_questions(
    subject: str,
    difficulty: Optional[str] = None,
    topic: Optional[str] = None,
    count: int = DEFAULT_QUIZ_SIZE,
    rng: Optional[random.Random] = None,
) -> List[QuizQuestion]:
    if not 1 <= count <= MAX_QUIZ_SIZE:
        raise InputValidationError(
            "Validation failed",
            details=[{"field": "count", "message": f"Count must be between 1 and {MAX_QUIZ_SIZE}"}],
        )
    candidates = list(QUESTION_BANK.get(subject, []))
    if difficulty:
        candidates = [question for question in candidates if question.difficulty == difficulty]
    if topic:
        needle = topic.lower()
        candidates = [question for question in candidates if needle in question.topic.lower()]
    if not candidates:
        return [placeholder_question(subject, topic, difficulty)]
    (rng or random).shuffle(candidates)
    return candidates[:count]
