from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Question:
    text: str
    correct: str
    incorrect: tuple[str, ...]


QUESTIONS: tuple[Question, ...] = (
    Question("What does ice turn into when it melts?", "Water", ("Stone", "Wood", "Fire")),
    Question("How many eyes does a person usually have?", "2", ("1", "3", "4")),
    Question("Which of these is a fruit?", "Banana", ("Cabbage", "Pork", "Rice")),
    Question("What is 1 plus 2?", "3", ("2", "4", "5")),
    Question("What is 5 minus 2?", "3", ("1", "2", "4")),
    Question("What is 2 times 3?", "6", ("4", "5", "7")),
    Question("What is 10 plus 5?", "15", ("10", "12", "20")),
    Question("What is 8 minus 4?", "4", ("2", "3", "5")),
    Question("Which of these flies in the sky?", "Airplane", ("Car", "Ship", "Bicycle")),
    Question("Which day comes after Monday?", "Tuesday", ("Sunday", "Friday", "Wednesday")),
    Question("Where do fish usually live?", "In water", ("In trees", "In soil", "In fire")),
    Question("Which organ do we hear with?", "Ears", ("Eyes", "Nose", "Mouth")),
    Question("What color is a clear sky?", "Blue", ("Green", "Red", "Purple")),
    Question("Where does the sun rise?", "East", ("West", "South", "North")),
    Question("What sound does a dog make?", "Woof", ("Meow", "Baa", "Ribbit")),
)
