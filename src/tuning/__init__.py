"""
Тюнинг гиперпараметров: сетка, бизнес-скор, губернатор ресурсов,
оркестратор одного инструмента и планировщик нескольких инструментов.

Модули импортируются напрямую (src.tuning.orchestrator и т.д.):
walk-forward оценка зависит от scoring, а оркестратор - от walk-forward.
"""
