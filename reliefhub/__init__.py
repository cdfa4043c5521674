"""救灾资源协调：匹配与分配引擎"""

__version__ = "0.1.0"
